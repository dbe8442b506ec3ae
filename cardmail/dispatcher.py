"""
Email dispatch through the Gmail REST API.
"""

import asyncio
import base64
import logging
from email.message import EmailMessage
from typing import Optional, Protocol

import requests

from .errors import ProviderError
from .models import DeliveryReceipt

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    async def dispatch(
        self,
        to_address: str,
        subject: str,
        body: str,
        sender_credential: Optional[str] = None
    ) -> DeliveryReceipt: ...


def build_message(to_address: str, subject: str, body: str, from_address: Optional[str] = None) -> str:
    """Build an RFC 2822 plain-text message and return it base64url-encoded."""
    message = EmailMessage()
    if from_address:
        message["From"] = from_address
    message["To"] = to_address
    message["Subject"] = subject
    message.set_content(body, charset="utf-8")

    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


class GmailDispatcher:
    """Sends mail as the authenticated user with an OAuth access token.

    Attributes:
        API_URL: Gmail messages.send endpoint
        TIMEOUT: Request timeout in seconds
    """

    API_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
    TIMEOUT = 30

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        from_address: Optional[str] = None
    ):
        self.api_url = api_url or self.API_URL
        self.timeout = timeout or self.TIMEOUT
        self.session = session or requests.Session()
        self.from_address = from_address

    def _send_sync(self, raw: str, credential: str) -> DeliveryReceipt:
        try:
            response = self.session.post(
                self.api_url,
                json={"raw": raw},
                headers={"Authorization": f"Bearer {credential}"},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Gmail API request failed: {str(e)}")
            raise ProviderError("gmail", str(e)) from e

        if response.status_code == 401:
            raise ProviderError("gmail", "Gmail access token expired or invalid")
        if response.status_code == 403:
            raise ProviderError("gmail", "Insufficient Gmail permissions")
        if response.status_code >= 400:
            raise ProviderError("gmail", f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("gmail", "Invalid JSON in send response") from e

        if not data.get("id"):
            raise ProviderError("gmail", "Send response has no message id")

        return DeliveryReceipt(delivery_id=data["id"], thread_id=data.get("threadId"))

    async def dispatch(
        self,
        to_address: str,
        subject: str,
        body: str,
        sender_credential: Optional[str] = None
    ) -> DeliveryReceipt:
        """
        Send one email.

        Args:
            to_address: Recipient address
            subject: Subject line
            body: Plain-text body
            sender_credential: OAuth access token with gmail.send scope

        Returns:
            DeliveryReceipt with the Gmail message and thread ids

        Raises:
            ProviderError: Missing credential, HTTP or transport failure
        """
        if not sender_credential:
            raise ProviderError("gmail", "No sender credential supplied")

        raw = build_message(to_address, subject, body, self.from_address)
        receipt = await asyncio.to_thread(self._send_sync, raw, sender_credential)
        logger.info(f"Sent email to {to_address} (message {receipt.delivery_id})")
        return receipt
