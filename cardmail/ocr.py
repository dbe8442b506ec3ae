"""
Text extraction from business card images.

Local OCR uses EasyOCR with OpenCV preprocessing; it serves as the
fallback for the cloud extractor in vlm_ocr.py.
"""

import asyncio
import logging
import re
from typing import List, Optional, Protocol

import cv2
import easyocr
import numpy as np

from .errors import ProviderError
from .models import OCRResult

logger = logging.getLogger(__name__)


class TextExtractor(Protocol):
    async def extract_text(self, image: bytes, mime_type: str) -> OCRResult: ...


class EasyOCRExtractor:
    """Local OCR using EasyOCR."""

    # Known l/1 and o/0 confusions on Latin text
    WORD_CORRECTIONS = {
        "c0m": "com",
        ".c0m": ".com",
        "cQm": "com",
        "1nc": "Inc",
        "1NC": "INC",
        "L1C": "LLC",
        "11C": "LLC",
        "Corp0ration": "Corporation",
        "Manag3r": "Manager",
        "D1rector": "Director",
        "Eng1neer": "Engineer",
        "Deve1oper": "Developer",
        "Consu1tant": "Consultant",
        "Sa1es": "Sales",
        "emai1": "email",
        "Emai1": "Email",
    }

    # Detections below this confidence are dropped
    MIN_CONFIDENCE = 0.15

    def __init__(
        self,
        languages: List[str] = None,
        gpu: bool = False,
        model_dir: str = "./models",
        reader=None
    ):
        """
        Initialize OCR extractor.

        Args:
            languages: EasyOCR language codes
            gpu: Use GPU for OCR
            model_dir: Directory for model storage
            reader: Pre-built easyocr.Reader (tests inject a fake)
        """
        self.languages = languages or ["ja", "en"]
        self.gpu = gpu
        self.model_dir = model_dir
        self._reader = reader

    @property
    def reader(self):
        # Model loading is slow, so defer it to the first card
        if self._reader is None:
            logger.info(f"Initializing EasyOCR with languages: {self.languages}")
            self._reader = easyocr.Reader(
                lang_list=self.languages,
                gpu=self.gpu,
                model_storage_directory=self.model_dir,
                download_enabled=True,
                verbose=False
            )
        return self._reader

    def _decode(self, image: bytes) -> np.ndarray:
        img = cv2.imdecode(np.frombuffer(image, dtype=np.uint8), cv2.IMREAD_COLOR)
        if img is None:
            raise ValueError("Cannot decode image")
        return img

    def _preprocess_image(self, img: np.ndarray) -> np.ndarray:
        """Resize, denoise, boost contrast and sharpen for EasyOCR."""
        h, w = img.shape[:2]

        # EasyOCR does best around 1600px wide
        target_width = 1600
        if w < target_width:
            scale = target_width / w
            img = cv2.resize(img, (target_width, int(h * scale)), interpolation=cv2.INTER_CUBIC)
        elif w > 2400:
            scale = 2400 / w
            img = cv2.resize(img, (int(w * scale), int(h * scale)), interpolation=cv2.INTER_AREA)

        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        gray = cv2.fastNlMeansDenoising(gray, None, h=8, templateWindowSize=7, searchWindowSize=21)
        clahe = cv2.createCLAHE(clipLimit=3.0, tileGridSize=(12, 12))
        gray = clahe.apply(gray)

        # Unsharp mask
        blurred = cv2.GaussianBlur(gray, (0, 0), 1.0)
        gray = cv2.addWeighted(gray, 1.5, blurred, -0.5, 0)

        return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)

    def _correct_ocr_text(self, text: str) -> str:
        """Fix common digit/letter confusions inside Latin words."""
        for wrong, correct in self.WORD_CORRECTIONS.items():
            text = text.replace(wrong, correct)

        # letter + 1 + letter is almost always an "l"
        text = re.sub(r"([a-zA-Z])1([a-zA-Z])", r"\1l\2", text)
        text = re.sub(r"([a-zA-Z])0([a-zA-Z])", r"\1o\2", text)

        # Email domains split by OCR ("example . com")
        text = re.sub(r"@(\w+)\s*\.\s*com\b", r"@\1.com", text, flags=re.IGNORECASE)
        text = re.sub(r"www\s*\.\s*", "www.", text, flags=re.IGNORECASE)

        return " ".join(text.split())

    def _postprocess_text(self, lines: List[str]) -> List[str]:
        cleaned_lines = []
        for line in lines:
            line = self._correct_ocr_text(line)
            if len(line) < 2:
                continue
            # Drop lines that are mostly punctuation noise
            char_count = len([c for c in line if c.isalnum()])
            if char_count / len(line) > 0.5:
                cleaned_lines.append(line)
        return cleaned_lines

    def _read_sync(self, image: bytes) -> OCRResult:
        img = self._preprocess_image(self._decode(image))

        results = self.reader.readtext(img, detail=1, paragraph=False)

        # Top-to-bottom reading order
        results = sorted(results, key=lambda r: r[0][0][1])

        lines = []
        confidences = []
        for bbox, text, confidence in results:
            text = text.strip()
            if confidence >= self.MIN_CONFIDENCE and text:
                lines.append(text)
                confidences.append(confidence)

        cleaned_lines = self._postprocess_text(lines)

        # Longer detections weigh more
        if confidences:
            weights = [len(line) for line in lines]
            total_weight = sum(weights)
            confidence = sum(c * w for c, w in zip(confidences, weights)) / total_weight
        else:
            confidence = 0.0

        logger.info(f"EasyOCR extracted {len(cleaned_lines)} lines with {confidence:.2%} confidence")
        return OCRResult(text="\n".join(cleaned_lines), confidence=confidence, method="easyocr")

    async def extract_text(self, image: bytes, mime_type: str) -> OCRResult:
        """
        Extract text from image bytes.

        Args:
            image: Encoded image bytes
            mime_type: Declared MIME type (EasyOCR sniffs the format itself)

        Returns:
            OCRResult with newline-joined lines and weighted confidence

        Raises:
            ProviderError: If decoding or recognition fails
        """
        try:
            return await asyncio.to_thread(self._read_sync, image)
        except Exception as e:
            logger.error(f"EasyOCR extraction error: {e}", exc_info=True)
            raise ProviderError("easyocr", str(e)) from e


class FallbackTextExtractor:
    """Tries the primary extractor, then the secondary on error or empty text."""

    def __init__(self, primary: TextExtractor, secondary: Optional[TextExtractor] = None):
        self.primary = primary
        self.secondary = secondary

    async def extract_text(self, image: bytes, mime_type: str) -> OCRResult:
        try:
            result = await self.primary.extract_text(image, mime_type)
            if result.text.strip():
                return result
            primary_error = "no text detected"
        except ProviderError as e:
            primary_error = str(e)

        if self.secondary is None:
            raise ProviderError("ocr", primary_error)

        logger.warning(f"Primary OCR failed ({primary_error}), falling back to local OCR")
        result = await self.secondary.extract_text(image, mime_type)
        if not result.text.strip():
            raise ProviderError("ocr", "No text extracted from image")
        return result
