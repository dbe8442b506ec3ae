"""
Follow-up email composition.

The AI generator is tried first; any failure falls back to a local
template so composition itself never fails.
"""

import asyncio
import logging
import re
from typing import AsyncIterator, Optional, Protocol, Tuple, Union

from .errors import ValidationError
from .models import (
    CANONICAL_CLOSING,
    ComposeOptions,
    ContactRecord,
    EmailContent,
    Language,
    PartialEmail,
    SenderIdentity,
    Tone,
)

logger = logging.getLogger(__name__)


class EmailGenerator(Protocol):
    async def generate(
        self, contact: ContactRecord, options: ComposeOptions, sender: Optional[SenderIdentity] = None
    ) -> EmailContent: ...

    def stream(
        self, contact: ContactRecord, options: ComposeOptions, sender: Optional[SenderIdentity] = None
    ) -> AsyncIterator[str]: ...


# =========================
# TEMPLATES
# =========================

TEMPLATES = {
    (Language.PRIMARY, Tone.PROFESSIONAL): {
        "subject": "{name}様、お世話になっております",
        "body": (
            "{name}様\n\n"
            "お世話になっております。\n"
            "{company_line}{sender_intro}\n\n"
            "本日は貴重なお時間をいただき、ありがとうございました。\n"
            "名刺交換をさせていただき、光栄でした。\n"
            "{custom}"
            "今後ともどうぞよろしくお願いいたします。\n\n"
            + CANONICAL_CLOSING
        ),
    },
    (Language.PRIMARY, Tone.FRIENDLY): {
        "subject": "{name}様、ありがとうございました",
        "body": (
            "{name}様\n\n"
            "{sender_intro}\n\n"
            "今日は名刺交換をさせていただき、ありがとうございました。\n"
            "お話しできてとても嬉しかったです。\n"
            "{custom}"
            "またお会いできることを楽しみにしております。\n\n"
            "{signature}"
        ),
    },
    (Language.PRIMARY, Tone.CASUAL): {
        "subject": "{name}さん、お疲れ様でした",
        "body": (
            "{name}さん\n\n"
            "{sender_intro}\n\n"
            "今日はありがとうございました！\n"
            "名刺交換できて良かったです。\n"
            "{custom}"
            "また機会があればお話しましょう。\n\n"
            "{signature}"
        ),
    },
    (Language.SECONDARY, Tone.PROFESSIONAL): {
        "subject": "Nice meeting you, {name}",
        "body": (
            "Dear {name},\n\n"
            "Thank you for taking the time to exchange business cards with me today.\n\n"
            "It was a pleasure meeting you and learning about your work at {company}.\n"
            "{custom}\n"
            "I look forward to staying in touch and potentially collaborating in the future.\n\n"
            "Best regards,\n"
            "{signature}"
        ),
    },
    (Language.SECONDARY, Tone.FRIENDLY): {
        "subject": "Great meeting you today, {name}",
        "body": (
            "Hi {name},\n\n"
            "It was great meeting you today and exchanging business cards!\n\n"
            "I really enjoyed our conversation about {company}.\n"
            "{custom}\n"
            "Hope to connect again soon!\n\n"
            "Best,\n"
            "{signature}"
        ),
    },
    (Language.SECONDARY, Tone.CASUAL): {
        "subject": "Nice meeting you, {name}",
        "body": (
            "Hi {name},\n\n"
            "Thanks for the business card exchange today!\n\n"
            "Was nice chatting with you.\n"
            "{custom}\n"
            "Let's keep in touch!\n\n"
            "{signature}"
        ),
    },
}


def ensure_closing(body: str, tone: Tone, language: Language) -> str:
    """Append the canonical closing to primary-language professional bodies."""
    if language != Language.PRIMARY or tone != Tone.PROFESSIONAL:
        return body
    stripped = body.rstrip()
    if stripped.endswith(CANONICAL_CLOSING):
        return stripped
    return f"{stripped}\n\n{CANONICAL_CLOSING}"


def render_template(
    contact: ContactRecord,
    options: ComposeOptions,
    sender: Optional[SenderIdentity] = None
) -> EmailContent:
    """
    Build the deterministic fallback email.

    Pure local computation; never raises for any contact/options pair.
    """
    template = TEMPLATES[(options.language, options.tone)]
    sender_name = (sender.name if sender else "") or ""
    sender_company = (sender.company if sender else "") or ""

    if options.language == Language.PRIMARY:
        name = contact.name or "ご担当者"
        company = contact.company or "貴社"
        sender_intro = f"{sender_name}です。" if sender_name else "先日名刺交換をさせていただいた者です。"
        company_line = f"{sender_company}の" if sender_company and sender_name else ""
        custom = f"\n{options.custom_message}\n\n" if options.custom_message else "\n"
        signature = sender_name
    else:
        name = contact.name or "there"
        company = contact.company or "your company"
        sender_intro = ""
        company_line = ""
        custom = f"\n{options.custom_message}\n" if options.custom_message else ""
        signature = "\n".join(part for part in (sender_name, sender_company) if part)

    fields = {
        "name": name,
        "company": company,
        "sender_intro": sender_intro,
        "company_line": company_line,
        "custom": custom,
        "signature": signature,
    }
    subject = template["subject"].format(**fields)
    body = template["body"].format(**fields).strip()

    return EmailContent(
        subject=subject,
        body=ensure_closing(body, options.tone, options.language),
        tone=options.tone,
        language=options.language
    )


# =========================
# STREAM PARSING
# =========================

_SUBJECT_PREFIX = re.compile(r"^\s*(?:subject|件名)\s*[:：]\s*", re.IGNORECASE)
_SEPARATOR = re.compile(r"^\s*-{3,}\s*$", re.MULTILINE)


def split_streamed_text(text: str, complete: bool = False) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a (possibly incomplete) "Subject: ... / --- / body" response.

    A first line without the subject prefix is only reported once it is
    finished, so a partial "Subj" never surfaces as the subject.

    Args:
        text: Everything streamed so far
        complete: True once the stream has ended

    Returns:
        (subject, body); body is None until the separator has arrived
    """
    match = _SEPARATOR.search(text)
    head = text[:match.start()] if match else text
    first_line, newline, _ = head.lstrip().partition("\n")

    if _SUBJECT_PREFIX.match(first_line) or newline or match or complete:
        subject = _SUBJECT_PREFIX.sub("", first_line).strip() or None
    else:
        subject = None

    if match is None:
        return subject, None
    return subject, text[match.end():].strip() or None


# =========================
# COMPOSER
# =========================

class EmailComposer:
    """AI-first email composer with template fallback and optional streaming."""

    def __init__(
        self,
        generator: Optional[EmailGenerator] = None,
        ai_timeout: Optional[float] = None,
        default_sender: Optional[SenderIdentity] = None
    ):
        self.generator = generator
        self.ai_timeout = ai_timeout
        self.default_sender = default_sender

    def _finalize(self, content: EmailContent, options: ComposeOptions) -> EmailContent:
        if not content.subject.strip() or not content.body.strip():
            raise ValidationError("Email must have a non-empty subject and body")
        return EmailContent(
            subject=content.subject.strip(),
            body=ensure_closing(content.body.strip(), options.tone, options.language),
            tone=options.tone,
            language=options.language
        )

    async def compose(
        self,
        contact: ContactRecord,
        options: Optional[ComposeOptions] = None,
        sender: Optional[SenderIdentity] = None
    ) -> EmailContent:
        """
        Compose a follow-up email.

        Args:
            contact: Parsed card contact
            options: Tone, language, custom message and overrides
            sender: Identity used in the prompt and the signature

        Returns:
            The overrides verbatim, the AI email, or the template email
        """
        options = options or ComposeOptions()
        sender = sender or self.default_sender

        if options.subject_override and options.body_override:
            return EmailContent(
                subject=options.subject_override,
                body=options.body_override,
                tone=options.tone,
                language=options.language
            )

        if self.generator is None:
            return render_template(contact, options, sender)

        try:
            content = await asyncio.wait_for(
                self.generator.generate(contact, options, sender),
                timeout=self.ai_timeout
            )
            return self._finalize(content, options)
        except Exception as e:
            logger.warning(f"AI email generation failed, using template: {e}")
            return render_template(contact, options, sender)

    async def stream(
        self,
        contact: ContactRecord,
        options: Optional[ComposeOptions] = None,
        sender: Optional[SenderIdentity] = None
    ) -> AsyncIterator[Union[PartialEmail, EmailContent]]:
        """
        Stream an email as PartialEmail fragments, then one final EmailContent.

        If the stream breaks partway the fragments seen so far are void and
        the final item is the template email. Each call opens a new stream.
        """
        options = options or ComposeOptions()
        sender = sender or self.default_sender

        if (options.subject_override and options.body_override) or self.generator is None:
            yield await self.compose(contact, options, sender)
            return

        buffer = ""
        last = PartialEmail()
        deltas = self.generator.stream(contact, options, sender)
        try:
            while True:
                try:
                    delta = await asyncio.wait_for(deltas.__anext__(), timeout=self.ai_timeout)
                except StopAsyncIteration:
                    break
                buffer += delta
                subject, body = split_streamed_text(buffer)
                fragment = PartialEmail(subject=subject, body=body)
                if fragment != last and (subject or body):
                    last = fragment
                    yield fragment

            subject, body = split_streamed_text(buffer, complete=True)
            final = self._finalize(
                EmailContent(subject=subject or "", body=body or "", tone=options.tone, language=options.language),
                options
            )
        except Exception as e:
            logger.warning(f"AI email stream failed, discarding partial content: {e}")
            final = render_template(contact, options, sender)
        finally:
            await deltas.aclose()

        yield final
