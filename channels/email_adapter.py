"""
Email Channel Adapter — HTTP email API with suppression handling.

Provides:
- POST {base_url}/emails with a bearer API key
- "Name <address>" sender formatting
- Suppression list (bounces, complaints, unsubscribes)
- Mock mode when no api_key is configured
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx

from models.schemas import ChannelType, Recipient, SendResult
from channels.base import ChannelAdapter, ChannelError

logger = structlog.get_logger()


class EmailAdapter(ChannelAdapter):
    """
    Sends rendered HTML email through a JSON email API (Resend-compatible).

    Content handed to send() is already personalised HTML; the subject comes
    from metadata["subject"]. 429 and 5xx responses raise a retryable
    ChannelError so the base class retries them; other 4xx responses are
    returned as a typed rejection.
    """

    channel_type = ChannelType.EMAIL

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self._client = client
        self._suppressed: set[str] = set()
        self._base_url: str = ""
        self._api_key: str = ""
        self._from_email: str = ""
        self._from_name: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        self._apply_common_config(config)
        self._base_url = config.get("base_url", "https://api.resend.com").rstrip("/")
        self._api_key = config.get("api_key", "")
        self._from_email = config.get("from_email", "noreply@example.com")
        self._from_name = config.get("from_name", "")
        self._initialized = True
        if self.mock_mode:
            logger.info("email_adapter_mock_mode")

    @property
    def mock_mode(self) -> bool:
        return not self._api_key

    @property
    def sender(self) -> str:
        if self._from_name:
            return f"{self._from_name} <{self._from_email}>"
        return self._from_email

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=30.0)
        return self._client

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, address: str, recipient: Recipient, content: str,
                       metadata: dict[str, Any]) -> SendResult:
        if "@" not in address:
            return SendResult.failed(f"Invalid email address: {address}")
        if self.is_suppressed(address):
            return SendResult.failed(f"Suppressed: {address}")

        subject = metadata.get("subject") or "Message"

        if self.mock_mode:
            message_id = f"mock-{uuid.uuid4().hex}"
            logger.info("email_sent", to=address, subject=subject,
                        message_id=message_id, mock=True)
            return SendResult.ok(message_id)

        response = await self._get_client().post(
            "/emails",
            json={"from": self.sender, "to": [address], "subject": subject, "html": content},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise ChannelError(
                f"Email API error {response.status_code}",
                channel=self.channel_type.value, retryable=True,
            )
        if response.status_code >= 400:
            return SendResult.failed(f"Email API rejected ({response.status_code}): {response.text[:200]}")

        body = response.json() if response.content else {}
        message_id = body.get("id", "")
        logger.info("email_sent", to=address, subject=subject, message_id=message_id)
        return SendResult.ok(message_id)

    # ── Suppression ───────────────────────────────────────────

    def is_suppressed(self, email: str) -> bool:
        return email.lower() in self._suppressed

    async def handle_unsubscribe(self, email: str) -> dict[str, Any]:
        email = email.lower()
        self._suppressed.add(email)
        logger.info("email_unsubscribed", email=email)
        return {"status": "unsubscribed", "email": email}

    async def handle_bounce(self, data: dict[str, Any]) -> dict[str, Any]:
        email = data.get("email", "").lower()
        bounce_type = data.get("type", "transient")
        if bounce_type == "permanent":
            self._suppressed.add(email)
            logger.warning("permanent_bounce_suppressed", email=email)
        else:
            logger.info("transient_bounce", email=email)
        return {"status": "processed", "email": email, "type": bounce_type}

    async def handle_complaint(self, data: dict[str, Any]) -> dict[str, Any]:
        email = data.get("email", "").lower()
        self._suppressed.add(email)
        logger.warning("spam_complaint_suppressed", email=email)
        return {"status": "suppressed", "email": email}

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
