"""
Audience Resolver — turns a job's selector into an ordered recipient list.

The order returned for a fixed selector MUST be stable across calls: the
processor resumes at index `sent + failed` of the valid-recipient list, so an
unstable order skips or re-sends recipients when the audience is re-resolved.

Implementations:
  - StaticAudienceResolver — named segments held in memory / settings.yaml
  - RESTAudienceResolver   — segments fetched from a backend over HTTP
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import AudienceConfig, get_settings
from dispatch.errors import InvalidSelector
from models.schemas import ChannelType, Recipient

logger = structlog.get_logger()

DEFAULT_MIN_CHAT_ADDRESS_LENGTH = 8


def is_valid_for_channel(
    recipient: Recipient,
    channel: ChannelType,
    min_chat_address_length: int = DEFAULT_MIN_CHAT_ADDRESS_LENGTH,
) -> bool:
    """True when the recipient carries usable contact info for `channel`."""
    address = recipient.address_for(channel)
    if channel == ChannelType.EMAIL:
        return bool(address) and "@" in address
    return len(address) >= min_chat_address_length


def filter_valid(
    recipients: list[Recipient],
    channel: ChannelType,
    min_chat_address_length: int = DEFAULT_MIN_CHAT_ADDRESS_LENGTH,
) -> list[Recipient]:
    return [r for r in recipients if is_valid_for_channel(r, channel, min_chat_address_length)]


class AudienceResolver(abc.ABC):
    """Abstract base for all audience resolvers."""

    @abc.abstractmethod
    async def resolve(self, selector: str) -> list[Recipient]:
        """Return the ordered candidate list, or raise InvalidSelector."""
        ...

    async def close(self) -> None:
        pass

    @staticmethod
    def normalize_recipient(raw: dict[str, Any]) -> Recipient:
        """
        Convert raw backend data to a Recipient.
        Recognises the common field names for each channel address.
        """
        known = {"id", "external_id", "name", "full_name", "email", "email_address",
                 "chat_address", "whatsapp", "phone", "mobile", "user_id"}
        chat = raw.get("chat_address") or raw.get("whatsapp") or raw.get("phone") \
            or raw.get("mobile") or raw.get("user_id") or ""
        country_code = raw.get("country_code") or ""
        if chat and country_code and not str(chat).startswith("+"):
            chat = f"{country_code}{chat}"
        return Recipient(
            id=str(raw.get("id", raw.get("external_id", ""))),
            name=raw.get("name", raw.get("full_name", "")) or "",
            email=raw.get("email", raw.get("email_address", "")) or "",
            chat_address=str(chat),
            fields={k: v for k, v in raw.items() if k not in known},
        )


class StaticAudienceResolver(AudienceResolver):
    """Resolves named segments from an in-process mapping."""

    def __init__(self, segments: Optional[dict[str, list[Any]]] = None):
        self._segments: dict[str, list[Recipient]] = {}
        for name, members in (segments or {}).items():
            self.add_segment(name, members)

    def add_segment(self, name: str, members: list[Any]) -> None:
        self._segments[name] = [
            m if isinstance(m, Recipient) else self.normalize_recipient(m)
            for m in members
        ]

    async def resolve(self, selector: str) -> list[Recipient]:
        if selector not in self._segments:
            raise InvalidSelector(selector, "unknown segment")
        return list(self._segments[selector])


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class RESTAudienceResolver(AudienceResolver):
    """
    Fetches segment members from a REST backend.

    The backend is not trusted to return a stable order, so members are
    sorted by id before being handed to the dispatcher.
    """

    def __init__(self, config: AudienceConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().audience
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self.client

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, selector: str) -> Any:
        client = await self._get_client()
        url = self.config.endpoints.get("get_segment", "/segments/{selector}/recipients")
        url = url.replace("{selector}", selector)
        response = await client.get(url)
        response.raise_for_status()
        return response.json()

    async def resolve(self, selector: str) -> list[Recipient]:
        try:
            payload = await self._request(selector)
        except httpx.HTTPStatusError as e:
            logger.warning("audience_fetch_failed",
                           selector=selector, status=e.response.status_code)
            raise InvalidSelector(selector, f"backend returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("audience_fetch_error", selector=selector, error=str(e))
            raise InvalidSelector(selector, str(e)) from e

        rows = payload if isinstance(payload, list) else payload.get("data", payload.get("results", []))
        recipients = [self.normalize_recipient(r) for r in rows]
        recipients.sort(key=lambda r: r.id)
        logger.info("audience_resolved", selector=selector, count=len(recipients))
        return recipients

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


def create_audience_resolver(config: AudienceConfig = None) -> AudienceResolver:
    """Factory: create the configured resolver backend."""
    config = config or get_settings().audience
    if config.backend == "rest":
        return RESTAudienceResolver(config)
    return StaticAudienceResolver(config.segments)
