"""Tests for the Continuation Sweeper."""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from database.store_memory import InMemoryJobStore
from dispatch.processor import DispatchProcessor
from dispatch.sweeper import ContinuationSweeper
from dispatch.ticker import ContinuationTicker
from models.schemas import ChannelType, JobStatus, SweepAction

from conftest import FakeAdapter, SleepRecorder, make_recipients, seed_job


def actions(result) -> dict[str, SweepAction]:
    return {e.job_id: e.action for e in result.entries}


@pytest.fixture
def sweeper(store, processor) -> ContinuationSweeper:
    return ContinuationSweeper(store, processor)


class TestIdleSweeps:
    @pytest.mark.asyncio
    async def test_empty_store(self, sweeper):
        result = await sweeper.sweep()
        assert result.is_empty
        assert result.scanned == 0

    @pytest.mark.asyncio
    async def test_nothing_running_is_noop(self, store, sweeper):
        paused = await seed_job(store, make_recipients(2), status=JobStatus.PAUSED)
        done = await seed_job(store, make_recipients(2), status=JobStatus.COMPLETED, sent_count=2)
        cancelled = await seed_job(store, make_recipients(2), status=JobStatus.CANCELLED)
        before = {j.id: j for j in await store.list_jobs()}

        for _ in range(3):
            assert (await sweeper.sweep()).is_empty

        after = {j.id: j for j in await store.list_jobs()}
        for job_id in (paused.id, done.id, cancelled.id):
            assert after[job_id].status == before[job_id].status
            assert after[job_id].sent_count == before[job_id].sent_count
            assert after[job_id].updated_at == before[job_id].updated_at


class TestContinuation:
    @pytest.mark.asyncio
    async def test_dispatches_and_drains(self, store, sweeper, email_adapter):
        a = await seed_job(store, make_recipients(3, prefix="a"))
        b = await seed_job(store, make_recipients(4, prefix="b"))

        result = await sweeper.sweep()
        assert actions(result) == {a.id: SweepAction.DISPATCHED, b.id: SweepAction.DISPATCHED}
        assert result.scanned == 2

        await sweeper.drain()
        assert (await store.get_job(a.id)).status == JobStatus.COMPLETED
        assert (await store.get_job(b.id)).status == JobStatus.COMPLETED
        assert len(email_adapter.sent) == 7
        assert sweeper.inflight == []

        assert (await sweeper.sweep()).is_empty

    @pytest.mark.asyncio
    async def test_completes_fully_processed_job(self, store, sweeper, email_adapter):
        job = await seed_job(store, make_recipients(3), sent_count=2, failed_count=1)

        result = await sweeper.sweep()

        assert actions(result) == {job.id: SweepAction.COMPLETED}
        final = await store.get_job(job.id)
        assert final.status == JobStatus.COMPLETED
        assert final.completed_at is not None
        assert email_adapter.sent == []

    @pytest.mark.asyncio
    async def test_skips_job_already_in_flight(self, store, registry, processor):
        gate = asyncio.Event()

        async def on_send(recipient):
            await gate.wait()

        registry.register(FakeAdapter(ChannelType.EMAIL, on_send=on_send))
        sweeper = ContinuationSweeper(store, processor)
        job = await seed_job(store, make_recipients(2))

        first = await sweeper.sweep()
        await asyncio.sleep(0)
        second = await sweeper.sweep()

        assert actions(first) == {job.id: SweepAction.DISPATCHED}
        assert second.is_empty
        assert sweeper.inflight == [job.id]

        gate.set()
        await sweeper.drain()
        assert (await store.get_job(job.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels_stragglers(self, store, registry, processor):
        async def on_send(recipient):
            await asyncio.Event().wait()

        registry.register(FakeAdapter(ChannelType.EMAIL, on_send=on_send))
        sweeper = ContinuationSweeper(store, processor)
        job = await seed_job(store, make_recipients(2))

        await sweeper.sweep()
        await sweeper.drain(timeout=0.05)

        stuck = await store.get_job(job.id)
        assert stuck.status == JobStatus.RUNNING
        assert stuck.sent_count == 0
        assert stuck.lease_owner is None


class TestIsolation:
    @pytest.mark.asyncio
    async def test_failing_pass_does_not_stop_others(self, store, processor, email_adapter, registry):
        registry._adapters.pop(ChannelType.CHAT)
        sweeper = ContinuationSweeper(store, processor)
        orphan = await seed_job(store, make_recipients(2, prefix="c"), channel=ChannelType.CHAT)
        healthy = await seed_job(store, make_recipients(2, prefix="e"))

        result = await sweeper.sweep()
        await sweeper.drain()

        assert actions(result) == {orphan.id: SweepAction.DISPATCHED, healthy.id: SweepAction.DISPATCHED}
        assert (await store.get_job(orphan.id)).status == JobStatus.RUNNING
        assert (await store.get_job(healthy.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_store_error_on_one_job_is_reported(self, processor):
        class FlakyStore(InMemoryJobStore):
            broken: set = set()

            async def compare_and_set_status(self, job_id, expected, new, **stamps):
                if job_id in self.broken:
                    raise ConnectionError("database went away")
                return await super().compare_and_set_status(job_id, expected, new, **stamps)

        store = FlakyStore()
        processor.store = store
        sweeper = ContinuationSweeper(store, processor)
        broken = await seed_job(store, make_recipients(1), sent_count=1)
        fine = await seed_job(store, make_recipients(1), sent_count=1)
        store.broken = {broken.id}

        result = await sweeper.sweep()

        assert actions(result) == {broken.id: SweepAction.ERROR, fine.id: SweepAction.COMPLETED}
        assert "database went away" in result.entries[0].detail
        assert (await store.get_job(fine.id)).status == JobStatus.COMPLETED


class TestActivation:
    @pytest.mark.asyncio
    async def test_due_pending_job_is_activated_and_sent(self, store, sweeper, email_adapter):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        job = await seed_job(store, make_recipients(2), status=JobStatus.PENDING, scheduled_at=past)

        result = await sweeper.sweep()
        await sweeper.drain()

        assert [e.action for e in result.entries] == [SweepAction.ACTIVATED, SweepAction.DISPATCHED]
        final = await store.get_job(job.id)
        assert final.status == JobStatus.COMPLETED
        assert final.started_at is not None
        assert len(email_adapter.sent) == 2

    @pytest.mark.asyncio
    async def test_future_or_unscheduled_pending_stays(self, store, sweeper):
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        later = await seed_job(store, make_recipients(1), status=JobStatus.PENDING, scheduled_at=future)
        manual = await seed_job(store, make_recipients(1), status=JobStatus.PENDING)

        assert (await sweeper.sweep()).is_empty
        assert (await store.get_job(later.id)).status == JobStatus.PENDING
        assert (await store.get_job(manual.id)).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_activation_can_be_disabled(self, store, processor):
        sweeper = ContinuationSweeper(store, processor, activate_pending=False)
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        job = await seed_job(store, make_recipients(1), status=JobStatus.PENDING, scheduled_at=past)

        assert (await sweeper.sweep()).is_empty
        assert (await store.get_job(job.id)).status == JobStatus.PENDING


class TestOverlappingSweepers:
    @pytest.mark.asyncio
    async def test_two_processes_never_double_send(self, store, registry, resolver, test_settings):
        async def on_send(recipient):
            await asyncio.sleep(0)

        adapter = FakeAdapter(ChannelType.EMAIL, on_send=on_send)
        registry.register(adapter)
        sweepers = [
            ContinuationSweeper(store, DispatchProcessor(store, registry, resolver, test_settings.dispatch,
                                                         sleep=SleepRecorder()))
            for _ in range(2)
        ]
        job = await seed_job(store, make_recipients(6))

        await asyncio.gather(*(s.sweep() for s in sweepers))
        await asyncio.gather(*(s.drain() for s in sweepers))

        assert adapter.sent == [f"r{i:03d}" for i in range(1, 7)]
        assert (await store.get_job(job.id)).status == JobStatus.COMPLETED


class TestTicker:
    @pytest.mark.asyncio
    async def test_ticks_until_stopped(self, service, store, email_adapter):
        job = await seed_job(store, make_recipients(3))
        ticker = ContinuationTicker(service, interval_s=0.01)
        await ticker.start()
        assert ticker.running
        for _ in range(100):
            await asyncio.sleep(0.01)
            if (await store.get_job(job.id)).status == JobStatus.COMPLETED:
                break
        await ticker.stop()

        assert not ticker.running
        assert ticker.ticks >= 1
        assert (await store.get_job(job.id)).status == JobStatus.COMPLETED
        assert len(email_adapter.sent) == 3

    @pytest.mark.asyncio
    async def test_tick_errors_do_not_stop_loop(self, service, monkeypatch):
        calls = []

        async def boom():
            calls.append(1)
            raise RuntimeError("store offline")

        monkeypatch.setattr(service, "continue_jobs", boom)
        ticker = ContinuationTicker(service, interval_s=0.01)
        await ticker.start()
        await asyncio.sleep(0.1)
        await ticker.stop()
        assert len(calls) >= 2
        assert ticker.ticks == 0
