"""
Chat Channel Adapter — HTTP chat gateway (WhatsApp-style messaging).

Sends `{to, text}` to POST {base_url}/messages. Without a base_url the
adapter runs in mock mode and records messages in an in-process outbox.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx

from models.schemas import ChannelType, Recipient, SendResult
from channels.base import ChannelAdapter, ChannelError

logger = structlog.get_logger()


class ChatAdapter(ChannelAdapter):

    channel_type = ChannelType.CHAT

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self._client = client
        self._base_url: str = ""
        self._api_key: str = ""
        self.outbox: list[dict[str, Any]] = []      # mock mode only

    async def initialize(self, config: dict[str, Any]) -> None:
        self._apply_common_config(config)
        self._base_url = config.get("base_url", "").rstrip("/")
        self._api_key = config.get("api_key", "")
        self._initialized = True
        if self.mock_mode:
            logger.info("chat_adapter_mock_mode")

    @property
    def mock_mode(self) -> bool:
        return not self._base_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._client = httpx.AsyncClient(base_url=self._base_url, headers=headers, timeout=30.0)
        return self._client

    async def _do_send(self, address: str, recipient: Recipient, content: str,
                       metadata: dict[str, Any]) -> SendResult:
        if self.mock_mode:
            message_id = f"mock-{uuid.uuid4().hex}"
            self.outbox.append({"to": address, "text": content, "id": message_id})
            logger.info("chat_sent", to=address, message_id=message_id, mock=True)
            return SendResult.ok(message_id)

        response = await self._get_client().post("/messages", json={"to": address, "text": content})
        if response.status_code == 429 or response.status_code >= 500:
            raise ChannelError(
                f"Chat gateway error {response.status_code}",
                channel=self.channel_type.value, retryable=True,
            )
        if response.status_code >= 400:
            return SendResult.failed(f"Chat gateway rejected ({response.status_code}): {response.text[:200]}")

        body = response.json() if response.content else {}
        message_id = body.get("id") or body.get("message_id") or ""
        logger.info("chat_sent", to=address, message_id=message_id)
        return SendResult.ok(message_id)

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
