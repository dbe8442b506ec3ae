"""
CardMail package initialization.
"""

from .errors import (
    CapacityExceeded,
    CardMailError,
    ExhaustedRetries,
    JobNotFound,
    ProviderError,
    StaleTransition,
    ValidationError,
)
from .models import (
    ComposeOptions,
    ContactRecord,
    EmailContent,
    Job,
    JobStatus,
    Language,
    PartialEmail,
    RetryDecision,
    SenderIdentity,
    Tone,
)
from .job_store import JobStore
from .composer import EmailComposer
from .parser import StructuredParser
from .orchestrator import PipelineOrchestrator
from .pipeline import BackgroundRunner, CardMailPipeline, build_pipeline

__all__ = [
    "CapacityExceeded",
    "CardMailError",
    "ExhaustedRetries",
    "JobNotFound",
    "ProviderError",
    "StaleTransition",
    "ValidationError",
    "ComposeOptions",
    "ContactRecord",
    "EmailContent",
    "Job",
    "JobStatus",
    "Language",
    "PartialEmail",
    "RetryDecision",
    "SenderIdentity",
    "Tone",
    "JobStore",
    "EmailComposer",
    "StructuredParser",
    "PipelineOrchestrator",
    "BackgroundRunner",
    "CardMailPipeline",
    "build_pipeline",
]
