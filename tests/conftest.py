"""Shared test fixtures for the bulk dispatcher."""
import pytest
from typing import Any, Awaitable, Callable, Optional

import config.settings as settings_module
from audience.resolver import StaticAudienceResolver
from channels.base import ChannelAdapter, ChannelRegistry
from config.settings import DispatchConfig, SchedulerConfig, Settings
from database.store_factory import reset_store
from database.store_memory import InMemoryJobStore
from dispatch.processor import DispatchProcessor
from dispatch.service import DispatchService
from models.schemas import (
    ChannelType, DispatchJob, JobStatus, MessageTemplate, Recipient, SendResult,
)


class FakeAdapter(ChannelAdapter):
    """
    Scripted adapter: records every send, fails or raises for chosen
    recipient ids, and can run a hook before each send returns.
    """

    def __init__(self, channel: ChannelType = ChannelType.EMAIL,
                 fail_ids=(), raise_ids=(),
                 on_send: Optional[Callable[[Recipient], Awaitable[None]]] = None):
        super().__init__()
        self.channel_type = channel
        self.fail_ids = set(fail_ids)
        self.raise_ids = set(raise_ids)
        self.on_send = on_send
        self.sent: list[str] = []
        self.contents: list[str] = []
        self.metadata: list[dict[str, Any]] = []
        self.retry_backoff_seconds = 0

    async def initialize(self, config: dict[str, Any]) -> None:
        self._initialized = True

    async def _do_send(self, address, recipient, content, metadata) -> SendResult:
        if self.on_send:
            await self.on_send(recipient)
        if recipient.id in self.raise_ids:
            raise RuntimeError(f"provider exploded for {recipient.id}")
        if recipient.id in self.fail_ids:
            return SendResult.failed("Mailbox unavailable")
        self.sent.append(recipient.id)
        self.contents.append(content)
        self.metadata.append(metadata)
        return SendResult.ok(f"ref-{recipient.id}")


def make_recipients(n: int, prefix: str = "r") -> list[Recipient]:
    return [
        Recipient(
            id=f"{prefix}{i:03d}",
            name=f"Person {i}",
            email=f"person{i}@example.com",
            chat_address=f"+55119999{i:04d}",
        )
        for i in range(1, n + 1)
    ]


async def seed_job(store, recipients: list[Recipient], status: JobStatus = JobStatus.RUNNING,
                   channel: ChannelType = ChannelType.EMAIL, interval: float = 0.0,
                   snapshot: bool = True, selector: str = "all", **fields) -> DispatchJob:
    job = DispatchJob(
        channel=channel,
        audience_selector=selector,
        template=MessageTemplate(body="Hi {{name}}", subject="Hello"),
        total_candidates=len(recipients),
        valid_candidates=len(recipients),
        interval_seconds=interval,
        status=status,
        **fields,
    )
    return await store.create_job(job, recipients if snapshot else None)


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def test_settings():
    """Deterministic settings: memory store, no ticker, no delays."""
    settings = Settings(
        dispatch=DispatchConfig(default_interval_seconds=0.0, batch_size=25,
                                max_pass_seconds=45.0, lease_seconds=60.0),
        scheduler=SchedulerConfig(enabled=False),
    )
    settings_module._settings = settings
    reset_store()
    yield settings
    settings_module._settings = None
    reset_store()


@pytest.fixture
def recipients() -> list[Recipient]:
    return make_recipients(5)


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def email_adapter() -> FakeAdapter:
    return FakeAdapter(ChannelType.EMAIL)


@pytest.fixture
def registry(email_adapter) -> ChannelRegistry:
    reg = ChannelRegistry()
    reg.register(email_adapter)
    reg.register(FakeAdapter(ChannelType.CHAT))
    return reg


@pytest.fixture
def resolver(recipients) -> StaticAudienceResolver:
    return StaticAudienceResolver({
        "all": recipients,
        "mixed": recipients[:3] + [
            Recipient(id="bad-1", name="No Mail", email="not-an-address"),
            Recipient(id="bad-2", name="Nobody"),
        ],
        "nobody-reachable": [Recipient(id="x1", name="X", email="x-at-nowhere")],
    })


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def processor(store, registry, resolver, test_settings, sleeper) -> DispatchProcessor:
    return DispatchProcessor(store, registry, resolver, test_settings.dispatch, sleep=sleeper)


@pytest.fixture
def service(store, registry, resolver, test_settings, processor) -> DispatchService:
    return DispatchService(store, registry, resolver, test_settings, processor=processor)
