"""
Channel Adapters — base infrastructure shared by every message provider.

Provides:
- ChannelError: structured transport error with a retryable flag
- TokenBucketRateLimiter: async token bucket for provider-side rate limits
- ChannelMetrics: per-channel send/fail/latency tracking
- ChannelAdapter: abstract base wrapping every send with rate limiting,
  bounded transport retry, and metrics; always returns a SendResult
- ChannelRegistry: adapter lookup, initialisation, health checks
"""
from __future__ import annotations

import abc
import asyncio
import time
from collections import Counter, deque
import structlog
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from models.schemas import ChannelType, Recipient, SendResult

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel transport operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ChannelError):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError))


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Provider-side send limit shared by every job on one adapter.
    Holds at most `burst` tokens and refills `rate` tokens per second.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = max(rate, 0.001)
        self.burst = max(burst, 1)
        self._tokens: float = float(self.burst)
        self._stamp = time.monotonic()
        self._lock = asyncio.Lock()

    def _take(self) -> float:
        """Take a token if one is available; otherwise return the seconds until one is."""
        now = time.monotonic()
        self._tokens = min(float(self.burst), self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / self.rate

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                wait = self._take()
            if wait == 0.0:
                return True
            left = deadline - time.monotonic()
            if left <= 0:
                return False
            await asyncio.sleep(min(wait, left))


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Running send counters for one channel. Latency is a running total; only the last few errors are kept."""

    RECENT_ERRORS = 10

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latency_total_ms: float = 0.0
        self._latency_samples: int = 0
        self._recent_errors: deque[str] = deque(maxlen=self.RECENT_ERRORS)
        self.failure_reasons: Counter[str] = Counter()

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latency_total_ms += latency_ms
            self._latency_samples += 1

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._recent_errors.append(error)
            # "Suppressed: a@b.c" and "Suppressed: d@e.f" share one bucket
            self.failure_reasons[error.split(":", 1)[0]] += 1

    @property
    def avg_latency_ms(self) -> float:
        return self._latency_total_ms / self._latency_samples if self._latency_samples else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "failure_reasons": dict(self.failure_reasons.most_common(5)),
            "recent_errors": list(self._recent_errors),
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all message provider adapters.

    Subclasses implement _do_send, returning a SendResult for expected
    outcomes (including rejections) and raising ChannelError / httpx errors
    for transport problems. The base class wraps every send with rate
    limiting, bounded retry of retryable transport errors, and metrics, and
    converts whatever is left into a failed SendResult. send() never raises
    for a per-recipient problem.
    """

    channel_type: ChannelType

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._rate_limiter: Optional[TokenBucketRateLimiter] = None
        self._rate_limit_timeout: float = 10.0
        self._metrics: Optional[ChannelMetrics] = None
        self.max_send_attempts: int = 3
        self.retry_backoff_seconds: float = 1.0

    def _ensure_metrics(self):
        if self._metrics is None:
            self._metrics = ChannelMetrics(self.channel_type)

    def _apply_common_config(self, config: dict[str, Any]) -> None:
        self._config = config
        self.max_send_attempts = int(config.get("max_send_attempts", self.max_send_attempts))
        self.retry_backoff_seconds = float(config.get("retry_backoff_seconds", self.retry_backoff_seconds))
        rate = config.get("rate_per_second")
        if rate:
            self._rate_limiter = TokenBucketRateLimiter(
                rate=float(rate), burst=int(config.get("burst", max(1, int(float(rate))))),
            )

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, address: str, recipient: Recipient, content: str,
                       metadata: dict[str, Any]) -> SendResult:
        ...

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send(self, recipient: Recipient, content: str,
                   metadata: dict[str, Any] = None) -> SendResult:
        self._ensure_metrics()
        metadata = metadata or {}

        address = self.get_address(recipient)
        if not address:
            self._metrics.record_failure("no_address")
            return SendResult.failed(f"No {self.channel_type.value} address")

        if self._rate_limiter:
            if not await self._rate_limiter.acquire(timeout=self._rate_limit_timeout):
                self._metrics.record_failure("rate_limited")
                return SendResult.failed("Rate limit exceeded", retryable=True)

        start = time.monotonic()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self.max_send_attempts)),
                wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=10),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    result = await self._do_send(address, recipient, content, metadata)
        except Exception as e:
            logger.warning("channel_send_error",
                           channel=self.channel_type.value,
                           recipient_id=recipient.id,
                           error=str(e))
            self._metrics.record_failure(str(e))
            return SendResult.failed(str(e) or type(e).__name__, retryable=_is_retryable(e))

        if result.success:
            self._metrics.record_send((time.monotonic() - start) * 1000)
        else:
            self._metrics.record_failure(result.reason)
        return result

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        self._ensure_metrics()
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "metrics": self._metrics.to_dict(),
        }

    def get_address(self, recipient: Recipient) -> Optional[str]:
        return recipient.address_for(self.channel_type) or None

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            try:
                ch_cfg = configs.get(ch.value, {})
                # ChannelConfig dataclass → dict so adapters can call .get()
                if hasattr(ch_cfg, "credentials"):
                    ch_cfg = ch_cfg.credentials
                await adapter.initialize(ch_cfg)
            except Exception as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        for ch, a in self._adapters.items():
            try:
                await a.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))
