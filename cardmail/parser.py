import asyncio
import logging
import re
from typing import List, Optional, Protocol

from .errors import ValidationError
from .models import ContactRecord, Language

logger = logging.getLogger(__name__)

# Kana and CJK ideographs
_JAPANESE_CHARS = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uff66-\uff9f]")


def detect_language(text: str, hint: str = "auto") -> Language:
    """Resolve an auto/primary/secondary hint against the card text."""
    if hint and hint != "auto":
        return Language.parse(hint)
    return Language.PRIMARY if _JAPANESE_CHARS.search(text or "") else Language.SECONDARY


class ContactExtractor(Protocol):
    async def extract(self, raw_text: str, language: Language) -> ContactRecord: ...


# =========================
# PATTERN PARSER
# =========================

class PatternContactParser:
    """Deterministic extractor built from regexes and line heuristics."""

    CONFIDENCE = 0.4

    def __init__(self):
        self.patterns = {
            "email": re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
            "url": re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE),
            "phone": {
                Language.PRIMARY: re.compile(
                    r"(?:\+81[-\s]?\d{1,4}[-\s]?\d{1,4}[-\s]?\d{4}|0\d{1,4}-\d{1,4}-\d{4}|0\d{9,10})"
                ),
                Language.SECONDARY: re.compile(
                    r"[\+]?[(]?[0-9]{1,3}[)]?[-\s\.]?[(]?[0-9]{1,4}[)]?[-\s\.]?[0-9]{1,4}[-\s\.]?[0-9]{1,9}"
                ),
            },
            "company": {
                Language.PRIMARY: re.compile(
                    r"(?:株式会社|有限会社|合同会社|合資会社|一般社団法人|一般財団法人|公益財団法人|学校法人|医療法人)"
                ),
                Language.SECONDARY: re.compile(
                    r"\b(?:Inc|Corp|Corporation|LLC|Ltd|Co|Company|GmbH|Group|Holdings|"
                    r"Technologies|Solutions|Systems|Partners|Associates|Enterprises)\b\.?",
                    re.IGNORECASE
                ),
            },
            "role": {
                Language.PRIMARY: re.compile(
                    r"(?:代表取締役|取締役|執行役員|社長|部長|次長|課長|係長|主任|室長|マネージャー|"
                    r"ディレクター|エンジニア|デザイナー|コンサルタント|営業)"
                ),
                Language.SECONDARY: re.compile(
                    r"\b(?:CEO|CTO|CFO|COO|President|Founder|Director|Manager|Engineer|Developer|"
                    r"Designer|Consultant|Analyst|Specialist|Officer|Sales|Head|Lead|Partner)\b",
                    re.IGNORECASE
                ),
            },
        }

    # =========================
    # PIPELINE API
    # =========================

    def parse(self, text: str, language: Language) -> ContactRecord:
        lines = [l.strip() for l in (text or "").split("\n") if l.strip()]
        card_text = "\n".join(lines)

        email = self._extract_email(card_text)
        phone = self._extract_phone(card_text, language)
        company = self._extract_company(lines, language)
        role = self._extract_role(lines, language)
        name = self._extract_name(lines, language, exclude=(company, role))

        logger.debug(f"Pattern extraction - Name: {name}, Company: {company}, Email: {email}")

        return ContactRecord(
            name=name,
            company=company,
            role=role,
            email=email,
            phone=phone,
            confidence=self.CONFIDENCE,
        )

    # =========================
    # HELPERS
    # =========================

    def _is_contact_info(self, line: str, language: Language) -> bool:
        return (
            bool(self.patterns["email"].search(line))
            or bool(self.patterns["url"].search(line))
            or bool(self._extract_phone(line, language))
        )

    def _extract_email(self, text: str) -> str:
        m = self.patterns["email"].search(text)
        return m.group(0) if m else ""

    def _extract_phone(self, text: str, language: Language) -> str:
        # Try the card's own locale first, then the other one
        for locale in (language, Language.SECONDARY if language == Language.PRIMARY else Language.PRIMARY):
            for m in self.patterns["phone"][locale].finditer(text):
                phone = m.group(0).strip()
                digits = "".join(c for c in phone if c.isdigit())
                if 10 <= len(digits) <= 15:
                    return phone
        return ""

    def _extract_company(self, lines: List[str], language: Language) -> str:
        for line in lines:
            if self._is_contact_info(line, language):
                continue
            if any(self.patterns["company"][locale].search(line) for locale in Language):
                return line
        return ""

    def _extract_role(self, lines: List[str], language: Language) -> str:
        for line in lines:
            if self._is_contact_info(line, language):
                continue
            if self.patterns["role"][language].search(line):
                return line
        return ""

    def _extract_name(self, lines: List[str], language: Language, exclude=()) -> str:
        """First line that matches no other pattern is taken as the name."""
        for line in lines:
            if line in exclude or self._is_contact_info(line, language):
                continue
            if any(self.patterns["company"][locale].search(line) for locale in Language):
                continue
            if self.patterns["role"][language].search(line):
                continue
            if sum(c.isdigit() for c in line) > 4:
                continue
            if 1 < len(line) < 50:
                return line
        return ""


# =========================
# STRUCTURED PARSER
# =========================

def merge_candidates(ai: ContactRecord, pattern: ContactRecord) -> ContactRecord:
    """Field-wise merge preferring the AI value.

    The merged confidence is raised to at least the floor but never above
    what a trusted AI read would claim.
    """
    merged = {
        field: getattr(ai, field) or getattr(pattern, field) or ""
        for field in ContactRecord.FIELDS
    }
    return ContactRecord(
        confidence=max(ai.confidence, StructuredParser.MERGED_CONFIDENCE_FLOOR),
        **merged
    )


class StructuredParser:
    """AI-first contact parser with pattern fallback and confidence merge."""

    AI_TRUST_THRESHOLD = 0.7
    MERGED_CONFIDENCE_FLOOR = 0.6

    def __init__(
        self,
        ai_extractor: Optional[ContactExtractor] = None,
        pattern_parser: Optional[PatternContactParser] = None,
        ai_timeout: Optional[float] = None
    ):
        self.ai_extractor = ai_extractor
        self.pattern_parser = pattern_parser or PatternContactParser()
        self.ai_timeout = ai_timeout

    async def parse(self, raw_text: str, language_hint: str = "auto") -> ContactRecord:
        """
        Turn raw OCR text into a ContactRecord.

        Args:
            raw_text: Text from the extraction stage
            language_hint: "auto", "primary"/"ja" or "secondary"/"en"

        Returns:
            The AI record if trusted, a merged record, or the pattern record

        Raises:
            ValidationError: If there is no text to parse
        """
        if not raw_text or not raw_text.strip():
            raise ValidationError("No text to parse")

        language = detect_language(raw_text, language_hint)

        if self.ai_extractor is None:
            return self._pattern_only(raw_text, language)

        try:
            ai_record = await asyncio.wait_for(
                self.ai_extractor.extract(raw_text, language),
                timeout=self.ai_timeout
            )
        except Exception as e:
            logger.warning(f"AI extraction failed, using pattern parser: {e}")
            return self._pattern_only(raw_text, language)

        if ai_record.confidence >= self.AI_TRUST_THRESHOLD:
            return ai_record

        logger.info(f"AI confidence {ai_record.confidence:.2f} below threshold, merging with patterns")
        pattern_record = self.pattern_parser.parse(raw_text, language)
        return merge_candidates(ai_record, pattern_record)

    def _pattern_only(self, raw_text: str, language: Language) -> ContactRecord:
        record = self.pattern_parser.parse(raw_text, language)
        return record.with_confidence(PatternContactParser.CONFIDENCE)
