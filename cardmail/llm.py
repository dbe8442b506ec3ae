"""
Gemini-backed contact extraction and email generation.

Both classes translate every SDK failure into ProviderError so callers
can apply their deterministic fallbacks.
"""

import json
import logging
import os
import re
from typing import Any, AsyncIterator, Dict, Optional

from google import genai
from google.genai import types

from .errors import ProviderError, ValidationError
from .models import ComposeOptions, ContactRecord, EmailContent, Language, SenderIdentity
from .prompts import (
    EXTRACTION_PROMPTS,
    compose_user_prompt,
    extraction_user_prompt,
    system_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"


def create_client(api_key: Optional[str] = None) -> genai.Client:
    """Build a Gemini client from an explicit key or the environment."""
    api_key = api_key or os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise ProviderError("gemini", "No API key. Set GOOGLE_API_KEY or GEMINI_API_KEY")
    return genai.Client(api_key=api_key)


def parse_json_response(response_text: str) -> Dict[str, Any]:
    """Parse JSON from a model response, tolerating markdown fences."""
    if not response_text:
        return {}
    try:
        data = json.loads(response_text)
        return data if isinstance(data, dict) else {}
    except json.JSONDecodeError:
        pass

    # ```json ... ``` block
    json_match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", response_text)
    if json_match:
        try:
            data = json.loads(json_match.group(1))
            return data if isinstance(data, dict) else {}
        except json.JSONDecodeError:
            pass

    # Bare object somewhere in the text
    json_match = re.search(r"\{[\s\S]*\}", response_text)
    if json_match:
        try:
            data = json.loads(json_match.group(0))
            return data if isinstance(data, dict) else {}
        except json.JSONDecodeError:
            pass

    return {}


class GeminiContactExtractor:
    """AI extractor: raw OCR text -> ContactRecord with model confidence."""

    def __init__(self, client: genai.Client, model: str = DEFAULT_MODEL):
        self.client = client
        self.model_name = model

    async def extract(self, raw_text: str, language: Language) -> ContactRecord:
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_name,
                contents=extraction_user_prompt(raw_text),
                config=types.GenerateContentConfig(
                    system_instruction=EXTRACTION_PROMPTS[language],
                    temperature=0.1,
                    max_output_tokens=1024,
                    response_mime_type="application/json"
                )
            )
            response_text = response.text
        except Exception as e:
            raise ProviderError("gemini", f"contact extraction failed: {e}") from e

        logger.debug(f"Gemini extraction response: {(response_text or '')[:500]}")

        data = parse_json_response(response_text)
        if not data:
            raise ProviderError("gemini", "Failed to parse extraction response")

        # The model sometimes omits its confidence
        if data.get("confidence") is None:
            data["confidence"] = 0.5
        return ContactRecord.from_dict(data)


class GeminiEmailGenerator:
    """AI email writer with a one-shot and a streaming variant."""

    def __init__(self, client: genai.Client, model: str = DEFAULT_MODEL, temperature: float = 0.7):
        self.client = client
        self.model_name = model
        self.temperature = temperature

    async def generate(
        self,
        contact: ContactRecord,
        options: ComposeOptions,
        sender: Optional[SenderIdentity] = None
    ) -> EmailContent:
        """
        Generate subject and body in one call.

        Raises:
            ProviderError: On SDK failure or unparsable output
            ValidationError: If subject or body is missing or empty
        """
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_name,
                contents=compose_user_prompt(contact, options, sender),
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt(options.tone, options.language),
                    temperature=self.temperature,
                    max_output_tokens=1024,
                    response_mime_type="application/json"
                )
            )
            response_text = response.text
        except Exception as e:
            raise ProviderError("gemini", f"email generation failed: {e}") from e

        data = parse_json_response(response_text)
        if not data:
            raise ProviderError("gemini", "Failed to parse email response")

        subject = data.get("subject")
        body = data.get("body")
        if not isinstance(subject, str) or not subject.strip():
            raise ValidationError("Generated email has no subject")
        if not isinstance(body, str) or not body.strip():
            raise ValidationError("Generated email has no body")

        return EmailContent(
            subject=subject.strip(),
            body=body.strip(),
            tone=options.tone,
            language=options.language
        )

    async def stream(
        self,
        contact: ContactRecord,
        options: ComposeOptions,
        sender: Optional[SenderIdentity] = None
    ) -> AsyncIterator[str]:
        """Yield raw text deltas of a "Subject: ... / --- / body" response."""
        try:
            chunks = await self.client.aio.models.generate_content_stream(
                model=self.model_name,
                contents=compose_user_prompt(contact, options, sender),
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt(options.tone, options.language, streaming=True),
                    temperature=self.temperature,
                    max_output_tokens=1024
                )
            )
            async for chunk in chunks:
                if chunk.text:
                    yield chunk.text
        except Exception as e:
            raise ProviderError("gemini", f"email stream failed: {e}") from e
