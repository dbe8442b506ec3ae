"""
Cloud OCR using Gemini vision.

Primary text extractor; EasyOCR in ocr.py is the local fallback.
"""

import logging
import math

from google import genai
from google.genai import types

from .errors import ProviderError
from .llm import DEFAULT_MODEL, parse_json_response
from .models import OCRResult
from .prompts import TRANSCRIPTION_PROMPT

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/heic",
}

# Used when the model does not report its own confidence
DEFAULT_CONFIDENCE = 0.9


class GeminiOCR:
    """
    Gemini-based OCR for business cards.
    Returns the transcribed text plus the model's confidence estimate.
    """

    def __init__(self, client: genai.Client, model: str = DEFAULT_MODEL):
        """
        Initialize Gemini OCR.

        Args:
            client: Configured google-genai client
            model: Vision-capable model name
        """
        self.client = client
        self.model_name = model
        logger.info(f"Gemini OCR initialized with model: {self.model_name}")

    async def extract_text(self, image: bytes, mime_type: str) -> OCRResult:
        """
        Transcribe the text on a card image.

        Args:
            image: Encoded image bytes
            mime_type: Image MIME type

        Returns:
            OCRResult with the transcription

        Raises:
            ProviderError: On unsupported input, SDK failure or unparsable output
        """
        if mime_type not in SUPPORTED_MIME_TYPES:
            raise ProviderError("gemini_ocr", f"Unsupported image type: {mime_type}")

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_name,
                contents=[
                    types.Content(
                        parts=[
                            types.Part.from_text(text=TRANSCRIPTION_PROMPT),
                            types.Part.from_bytes(data=image, mime_type=mime_type)
                        ]
                    )
                ],
                config=types.GenerateContentConfig(
                    temperature=0.1,
                    max_output_tokens=2048,
                    response_mime_type="application/json"
                )
            )
            response_text = response.text
        except Exception as e:
            logger.error(f"Gemini OCR failed: {e}")
            raise ProviderError("gemini_ocr", str(e)) from e

        data = parse_json_response(response_text)
        raw_text = data.get("raw_text")
        if not isinstance(raw_text, str):
            raise ProviderError("gemini_ocr", "Failed to parse transcription response")

        try:
            confidence = float(data.get("confidence", DEFAULT_CONFIDENCE))
        except (TypeError, ValueError):
            confidence = DEFAULT_CONFIDENCE
        if not math.isfinite(confidence):
            confidence = DEFAULT_CONFIDENCE

        return OCRResult(
            text=raw_text.strip(),
            confidence=max(0.0, min(1.0, confidence)),
            method="gemini"
        )
