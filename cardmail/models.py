"""
Data model for the card-processing pipeline.

Jobs are mutable and owned by the JobStore; ContactRecord and EmailContent
are immutable values attached to a job once a stage completes.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# =========================
# ENUMS
# =========================

class JobStatus(str, Enum):
    """Visible job states, in pipeline order."""
    QUEUED = "queued"
    EXTRACTING_TEXT = "extracting_text"
    PARSING = "parsing"
    COMPOSING = "composing"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"

    @property
    def order(self) -> int:
        return _STATUS_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SENT, JobStatus.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self in IN_FLIGHT_STATUSES


_STATUS_ORDER = {
    JobStatus.QUEUED: 0,
    JobStatus.EXTRACTING_TEXT: 1,
    JobStatus.PARSING: 2,
    JobStatus.COMPOSING: 3,
    JobStatus.SENDING: 4,
    JobStatus.SENT: 5,
    JobStatus.FAILED: 5,
}

IN_FLIGHT_STATUSES = frozenset({
    JobStatus.EXTRACTING_TEXT,
    JobStatus.PARSING,
    JobStatus.COMPOSING,
    JobStatus.SENDING,
})


class Tone(str, Enum):
    PROFESSIONAL = "professional"
    FRIENDLY = "friendly"
    CASUAL = "casual"


class Language(str, Enum):
    """Card/email language. Japanese is the primary market."""
    PRIMARY = "ja"
    SECONDARY = "en"

    @classmethod
    def parse(cls, value: Optional[str], default: "Language" = None) -> "Language":
        """Accept either the code ("ja") or the role name ("primary")."""
        if value is None or value == "":
            return default or cls.PRIMARY
        if isinstance(value, cls):
            return value
        lowered = str(value).lower()
        if lowered == "primary":
            return cls.PRIMARY
        if lowered == "secondary":
            return cls.SECONDARY
        return cls(lowered)


class RetryDecision(str, Enum):
    RETRY = "retry"
    GIVE_UP = "give_up"


# Canonical closing required for primary-language professional emails
CANONICAL_CLOSING = "ご返信お待ちしております。"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# VALUE OBJECTS
# =========================

@dataclass(frozen=True)
class ContactRecord:
    name: str = ""
    company: str = ""
    role: str = ""
    email: str = ""
    phone: str = ""
    confidence: float = 0.0

    FIELDS = ("name", "company", "role", "email", "phone")

    def with_confidence(self, confidence: float) -> "ContactRecord":
        return replace(self, confidence=confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name or "",
            "company": self.company or "",
            "role": self.role or "",
            "email": self.email or "",
            "phone": self.phone or "",
            "confidence": round(self.confidence, 2),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContactRecord":
        try:
            confidence = float(data.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        # NaN would survive the clamp below
        if not math.isfinite(confidence):
            confidence = 0.0
        return cls(
            name=str(data.get("name") or "").strip(),
            company=str(data.get("company") or "").strip(),
            role=str(data.get("role") or "").strip(),
            email=str(data.get("email") or "").strip(),
            phone=str(data.get("phone") or "").strip(),
            confidence=max(0.0, min(1.0, confidence)),
        )


@dataclass(frozen=True)
class EmailContent:
    subject: str
    body: str
    tone: Tone = Tone.PROFESSIONAL
    language: Language = Language.PRIMARY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "body": self.body,
            "tone": self.tone.value,
            "language": self.language.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailContent":
        return cls(
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            tone=Tone(data.get("tone") or Tone.PROFESSIONAL.value),
            language=Language.parse(data.get("language")),
        )


@dataclass(frozen=True)
class PartialEmail:
    """Streaming fragment; fields stay None until they start arriving."""
    subject: Optional[str] = None
    body: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in (("subject", self.subject), ("body", self.body)) if v is not None}


@dataclass(frozen=True)
class SenderIdentity:
    name: str = ""
    company: Optional[str] = None
    email: Optional[str] = None
    credential: Optional[str] = None  # OAuth access token for the dispatcher

    def to_dict(self) -> Dict[str, Any]:
        # Never persist the credential
        return {"name": self.name, "company": self.company, "email": self.email}


@dataclass(frozen=True)
class ComposeOptions:
    tone: Tone = Tone.PROFESSIONAL
    language: Language = Language.PRIMARY
    custom_message: Optional[str] = None
    subject_override: Optional[str] = None
    body_override: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tone": self.tone.value,
            "language": self.language.value,
            "custom_message": self.custom_message,
        }


@dataclass(frozen=True)
class OCRResult:
    text: str
    confidence: float
    method: str = ""


@dataclass(frozen=True)
class DeliveryReceipt:
    delivery_id: str
    thread_id: Optional[str] = None


# =========================
# JOB
# =========================

@dataclass(frozen=True)
class JobPayload:
    image: bytes
    mime_type: str
    sender: Optional[SenderIdentity] = None
    options: Optional[ComposeOptions] = None


@dataclass
class Job:
    id: str
    payload: JobPayload
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    attempt: int = 0
    contact: Optional[ContactRecord] = None
    email: Optional[EmailContent] = None
    delivery_id: Optional[str] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None
    # Scheduling state, not part of the public snapshot
    eligible_at: float = 0.0
    failed_stage: Optional[str] = None

    def clear_results(self) -> None:
        self.contact = None
        self.email = None
        self.delivery_id = None

    def to_dict(self) -> Dict[str, Any]:
        """Public, JSON-serializable view (image bytes excluded)."""
        data = {
            "job_id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "attempt": self.attempt,
            "mime_type": self.payload.mime_type,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "contact": self.contact.to_dict() if self.contact else None,
            "email": self.email.to_dict() if self.email else None,
            "delivery_id": self.delivery_id,
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Rebuild a job from a persisted snapshot (without its image)."""
        return cls(
            id=data["job_id"],
            payload=JobPayload(image=b"", mime_type=data.get("mime_type", "")),
            status=JobStatus(data["status"]),
            progress=int(data.get("progress", 0)),
            attempt=int(data.get("attempt", 0)),
            contact=ContactRecord.from_dict(data["contact"]) if data.get("contact") else None,
            email=EmailContent.from_dict(data["email"]) if data.get("email") else None,
            delivery_id=data.get("delivery_id"),
            error=data.get("error"),
            created_at=data.get("created_at") or utc_now(),
            completed_at=data.get("completed_at"),
        )
