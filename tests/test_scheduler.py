"""Tests for the FollowUpScheduler: main processor, retries, maintenance jobs and lifecycle."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from conftest import ACCOUNT, make_lead, make_message, make_task
from channels.memory import InMemoryTransport
from core.errors import PersistenceError
from core.scheduler import (
    DEAD_LEAD_REASON, MAIN_PROCESSOR, FollowUpScheduler, batch_size_for,
)
from models.schemas import (
    FollowUpTask, FollowUpTracking, FollowUpType, HealthStatus, LeadState,
    MessageSender, StrategyType, TaskStatus, Template, utcnow,
)


class BlockingTransport(InMemoryTransport):
    """Holds every send until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, recipient, artifact):
        self.entered.set()
        await self.release.wait()
        return await super().send(recipient, artifact)


@pytest.fixture
def scheduler(services) -> FollowUpScheduler:
    return services.scheduler


async def _due_task(store, lead=None, **task_fields):
    lead = lead or make_lead()
    await store.upsert_lead(lead)
    task = make_task(lead, scheduled_time=utcnow() - timedelta(minutes=1), **task_fields)
    await store.create_task(task)
    return lead, task


@pytest.mark.parametrize("depth,size", [
    (0, 25), (50, 25), (51, 50), (200, 50), (201, 75), (500, 75), (501, 100), (5000, 100),
])
def test_batch_size_scales_with_queue_depth(depth, size):
    assert batch_size_for(depth) == size


# ──────────────────────────────────────────────────────────────
#  Main processor
# ──────────────────────────────────────────────────────────────

class TestProcessDueTasks:
    @pytest.mark.asyncio
    async def test_sends_and_schedules_next_stage(self, scheduler, store, transport):
        lead, task = await _due_task(store)
        now = utcnow()

        stats = await scheduler.process_due_tasks(now)

        assert stats.processed == 1
        assert stats.queue_depth == 1
        assert stats.batch_size == 25
        assert stats.task_ids == [task.id]

        sent = await store.get_task(task.id)
        assert sent.status == TaskStatus.SENT
        assert sent.sent_at is not None
        assert sent.strategy == StrategyType.AI_TEMPLATE
        assert sent.follow_up_type == FollowUpType.RELATIONSHIP
        assert sent.template_id

        assert len(transport.sent) == 1
        assert transport.sent[0][0] == lead.phone_number

        tracking = await store.list_tracking(account_id=ACCOUNT)
        assert [t.task_id for t in tracking] == [task.id]
        assert (await store.get_template(sent.template_id)).usage_count == 1

        pending = await store.list_tasks_for_lead(lead.id, [TaskStatus.PENDING])
        assert len(pending) == 1
        assert pending[0].sequence_stage == 2
        assert not pending[0].is_final_attempt
        assert pending[0].scheduled_time > now

    @pytest.mark.asyncio
    async def test_stage_three_schedules_final_attempt(self, scheduler, store):
        lead, _ = await _due_task(store, sequence_stage=3)
        await scheduler.process_due_tasks(utcnow())
        pending = await store.list_tasks_for_lead(lead.id, [TaskStatus.PENDING])
        assert pending[0].sequence_stage == 4
        assert pending[0].is_final_attempt

    @pytest.mark.asyncio
    async def test_final_attempt_ends_sequence(self, scheduler, store):
        lead, _ = await _due_task(store, sequence_stage=4, is_final_attempt=True)
        stats = await scheduler.process_due_tasks(utcnow())
        assert stats.processed == 1
        assert await store.list_tasks_for_lead(lead.id, [TaskStatus.PENDING]) == []

    @pytest.mark.asyncio
    async def test_consecutive_runs_process_disjoint_tasks(self, scheduler, store):
        for _ in range(3):
            await _due_task(store)
        first = await scheduler.run_once()
        second = await scheduler.run_once()
        assert first.processed == 3
        assert second.processed == 0
        assert not set(first.task_ids) & set(second.task_ids)

    @pytest.mark.asyncio
    async def test_send_failure_schedules_retry_with_backoff(self, scheduler, store):
        scheduler.transport = InMemoryTransport(fail_with="provider down")
        _, task = await _due_task(store)
        now = utcnow()

        stats = await scheduler.process_due_tasks(now)

        assert stats.failed == 1
        failed = await store.get_task(task.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.attempt_count == 1
        assert failed.scheduled_time == now + timedelta(seconds=300)
        assert failed.last_error == "provider down"

    @pytest.mark.asyncio
    async def test_backoff_doubles_per_attempt(self, scheduler, store):
        scheduler.transport = InMemoryTransport(fail_with="provider down")
        _, task = await _due_task(store, attempt_count=2, status=TaskStatus.FAILED)
        now = utcnow()
        await scheduler.process_due_tasks(now)
        failed = await store.get_task(task.id)
        assert failed.attempt_count == 3
        assert failed.scheduled_time == now + timedelta(seconds=1200)

    @pytest.mark.asyncio
    async def test_exhausted_retries_go_dead(self, scheduler, store):
        scheduler.transport = InMemoryTransport(fail_with="provider down")
        _, task = await _due_task(store, attempt_count=3, max_retries=3, status=TaskStatus.FAILED)
        stats = await scheduler.process_due_tasks(utcnow())
        assert stats.dead == 1
        assert (await store.get_task(task.id)).status == TaskStatus.DEAD

    @pytest.mark.asyncio
    async def test_send_timeout_counts_as_failure(self, scheduler, store):
        scheduler.transport = BlockingTransport()
        scheduler.send_timeout_s = 0.05
        _, task = await _due_task(store)
        stats = await scheduler.process_due_tasks(utcnow())
        assert stats.failed == 1
        assert "timed out" in (await store.get_task(task.id)).last_error

    @pytest.mark.asyncio
    async def test_missing_lead_marks_task_dead(self, scheduler, store):
        task = FollowUpTask(lead_id="ghost", account_id=ACCOUNT, scheduled_time=utcnow() - timedelta(minutes=1))
        await store.create_task(task)
        stats = await scheduler.process_due_tasks(utcnow())
        assert stats.skipped == 1
        assert (await store.get_task(task.id)).status == TaskStatus.DEAD

    @pytest.mark.asyncio
    async def test_lead_without_phone_marks_task_dead(self, scheduler, store, transport):
        _, task = await _due_task(store, lead=make_lead(phone_number=""))
        stats = await scheduler.process_due_tasks(utcnow())
        assert stats.skipped == 1
        assert (await store.get_task(task.id)).status == TaskStatus.DEAD
        assert transport.sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lead_fields", [
        {"current_state": LeadState.BOOKED},
        {"current_state": LeadState.OPTED_OUT},
        {"follow_up_eligible": False, "follow_up_blocked_reason": "agent_paused"},
    ])
    async def test_ineligible_lead_is_skipped(self, scheduler, store, transport, lead_fields):
        _, task = await _due_task(store, lead=make_lead(**lead_fields))
        stats = await scheduler.process_due_tasks(utcnow())
        assert stats.skipped == 1
        stored = await store.get_task(task.id)
        assert stored.status == TaskStatus.DEAD
        assert stored.last_error.startswith("lead_ineligible:")
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_persistence_error_is_isolated_to_its_task(self, scheduler, store):
        _, broken = await _due_task(store)
        _, healthy = await _due_task(store)
        real_update = store.update_task

        async def update_task(task_id, **fields):
            if task_id == broken.id:
                raise PersistenceError("deadlock detected")
            return await real_update(task_id, **fields)

        store.update_task = update_task
        stats = await scheduler.process_due_tasks(utcnow())

        assert stats.processed == 1
        assert stats.failed == 1
        assert (await store.get_task(healthy.id)).status == TaskStatus.SENT
        assert scheduler.get_status()["recent_errors"][0]["error"] == "deadlock detected"

    @pytest.mark.asyncio
    async def test_cycle_stats_accumulate(self, scheduler, store):
        await _due_task(store)
        await scheduler.run_once()
        stats = scheduler.get_status()["stats"]
        assert stats["cycles"] == 1
        assert stats["total_processed"] == 1
        assert stats["avg_processing_ms"] > 0
        assert stats["last_cycle"]["processed"] == 1


class TestCycleAlarms:
    @staticmethod
    def _warnings(logs):
        return {e["event"] for e in logs if e["log_level"] == "warning"}

    @pytest.mark.asyncio
    async def test_clean_cycle_raises_no_alarm(self, scheduler, store):
        await _due_task(store)
        with capture_logs() as logs:
            await scheduler.process_due_tasks(utcnow())
        assert not self._warnings(logs) & {"cycle_slow", "cycle_failure_rate_high", "queue_backlog_high"}

    @pytest.mark.asyncio
    async def test_all_tasks_dead_is_high_failure_rate(self, scheduler, store):
        scheduler.transport = InMemoryTransport(fail_with="provider down")
        for _ in range(5):
            await _due_task(store, attempt_count=3, max_retries=3, status=TaskStatus.FAILED)

        with capture_logs() as logs:
            stats = await scheduler.process_due_tasks(utcnow())

        assert stats.dead == 5
        assert stats.failure_rate == 1.0
        assert "cycle_failure_rate_high" in self._warnings(logs)

    @pytest.mark.asyncio
    async def test_slow_cycle(self, scheduler, store):
        scheduler.config.max_processing_time_s = 0
        await _due_task(store)
        with capture_logs() as logs:
            await scheduler.process_due_tasks(utcnow())
        assert "cycle_slow" in self._warnings(logs)

    @pytest.mark.asyncio
    async def test_queue_backlog(self, scheduler, store):
        scheduler.config.max_queue_size = 2
        for _ in range(3):
            await _due_task(store)
        with capture_logs() as logs:
            stats = await scheduler.process_due_tasks(utcnow())
        assert stats.queue_depth == 3
        assert "queue_backlog_high" in self._warnings(logs)


# ──────────────────────────────────────────────────────────────
#  Job guard
# ──────────────────────────────────────────────────────────────

class TestJobGuard:
    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, scheduler, store):
        blocking = BlockingTransport()
        scheduler.transport = blocking
        await _due_task(store)

        first = asyncio.create_task(scheduler.run_once())
        await asyncio.wait_for(blocking.entered.wait(), timeout=5)

        second = await scheduler.run_once()
        assert second.skipped_cycle
        assert scheduler.jobs[MAIN_PROCESSOR].skips == 1

        blocking.release.set()
        stats = await first
        assert stats.processed == 1
        assert not scheduler.jobs[MAIN_PROCESSOR].running

    @pytest.mark.asyncio
    async def test_job_error_is_recorded_not_raised(self, scheduler, store):
        store.count_due_tasks = AsyncMock(side_effect=PersistenceError("db down"))
        stats = await scheduler.run_once()
        assert stats.processed == 0
        status = scheduler.get_status()
        assert status["jobs"][MAIN_PROCESSOR]["failures"] == 1
        assert status["jobs"][MAIN_PROCESSOR]["last_error"] == "db down"
        assert status["recent_errors"][-1]["source"] == MAIN_PROCESSOR

    @pytest.mark.asyncio
    async def test_error_buffer_is_bounded(self, scheduler):
        for i in range(150):
            scheduler._record_error(MAIN_PROCESSOR, RuntimeError(f"e{i}"))
        assert len(scheduler._errors) == 100
        assert scheduler.recent_errors(limit=1)[0]["error"] == "e149"


# ──────────────────────────────────────────────────────────────
#  Maintenance jobs
# ──────────────────────────────────────────────────────────────

class TestDeadLeadSweep:
    async def _finished_sequence(self, store, sent_days_ago):
        lead = make_lead()
        await store.upsert_lead(lead)
        final = make_task(lead, sequence_stage=4, is_final_attempt=True, status=TaskStatus.SENT,
                          sent_at=utcnow() - timedelta(days=sent_days_ago))
        await store.create_task(final)
        stray = make_task(lead, status=TaskStatus.PENDING, scheduled_time=utcnow() + timedelta(days=3))
        await store.create_task(stray)
        return lead, final, stray

    @pytest.mark.asyncio
    async def test_silent_lead_is_marked_dead(self, scheduler, store):
        lead, _, stray = await self._finished_sequence(store, sent_days_ago=8)

        result = await scheduler.sweep_dead_leads()

        assert result["marked_dead"] == 1
        updated = await store.get_lead(lead.id)
        assert updated.current_state == LeadState.DEAD
        assert not updated.follow_up_eligible
        assert updated.follow_up_blocked_reason == DEAD_LEAD_REASON
        assert (await store.get_task(stray.id)).status == TaskStatus.DEAD

    @pytest.mark.asyncio
    async def test_lead_that_replied_is_kept(self, scheduler, store):
        lead, _, stray = await self._finished_sequence(store, sent_days_ago=8)
        await store.add_message(make_message(lead.id, MessageSender.LEAD, "Still looking!",
                                             utcnow() - timedelta(days=2)))
        result = await scheduler.sweep_dead_leads()
        assert result["marked_dead"] == 0
        assert (await store.get_lead(lead.id)).current_state == LeadState.EXPLORING
        assert (await store.get_task(stray.id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_recent_final_attempt_is_not_swept(self, scheduler, store):
        lead, _, _ = await self._finished_sequence(store, sent_days_ago=3)
        result = await scheduler.sweep_dead_leads()
        assert result["marked_dead"] == 0

    @pytest.mark.asyncio
    async def test_old_tracking_rows_are_purged(self, scheduler, store):
        await store.record_tracking(FollowUpTracking(account_id=ACCOUNT, lead_id="l1", task_id="t1",
                                                     sent_at=utcnow() - timedelta(days=200)))
        await store.record_tracking(FollowUpTracking(account_id=ACCOUNT, lead_id="l1", task_id="t2",
                                                     sent_at=utcnow() - timedelta(days=20)))
        result = await scheduler.sweep_dead_leads()
        assert result["tracking_purged"] == 1
        assert [t.task_id for t in await store.list_tracking()] == ["t2"]


class TestAnalyticsJobs:
    @pytest.mark.asyncio
    async def test_daily_metrics_per_account(self, scheduler, store):
        now = utcnow()
        await store.upsert_lead(make_lead())
        for i, kind in enumerate([FollowUpType.URGENCY, FollowUpType.URGENCY, FollowUpType.RELATIONSHIP]):
            await store.record_tracking(FollowUpTracking(
                account_id=ACCOUNT, lead_id="l1", task_id=f"t{i}", follow_up_type=kind,
                strategy=StrategyType.AI_TEMPLATE, sent_at=now,
                response_received=i == 0, response_time_minutes=30.0 if i == 0 else None,
                led_to_appointment=i == 0,
            ))

        results = await scheduler.update_daily_analytics(now)

        metrics = results[ACCOUNT]
        assert metrics["total_sent"] == 3
        assert metrics["by_follow_up_type"] == {"urgency": 2, "relationship": 1}
        assert metrics["responses"] == 1
        assert metrics["appointments"] == 1
        assert metrics["avg_response_minutes"] == 30.0
        day = scheduler.analytics.today(now)
        assert (await store.get_daily_metrics(ACCOUNT, day))["total_sent"] == 3

    @pytest.mark.asyncio
    async def test_template_performance(self, scheduler, store):
        await store.create_template_record(Template(id="tpl_1", account_id=ACCOUNT, name="welcome"))
        for i in range(4):
            await store.record_tracking(FollowUpTracking(
                account_id=ACCOUNT, lead_id="l1", task_id=f"t{i}", template_id="tpl_1",
                response_received=i == 0, led_to_appointment=i == 0,
            ))
        await store.record_tracking(FollowUpTracking(
            account_id=ACCOUNT, lead_id="l1", task_id="old", template_id="tpl_1",
            response_received=True, sent_at=utcnow() - timedelta(days=45),
        ))

        updated = await scheduler.update_template_performance()

        assert updated == 1
        template = await store.get_template("tpl_1")
        assert template.response_rate == 25.0
        assert template.conversion_rate == 25.0


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self, scheduler):
        report = await scheduler.check_health()
        assert report.status == HealthStatus.HEALTHY
        assert report.issues == []

    @pytest.mark.asyncio
    async def test_unreachable_store_is_unhealthy(self, scheduler, store):
        store.ping = AsyncMock(return_value=False)
        report = await scheduler.check_health()
        assert report.status == HealthStatus.UNHEALTHY
        assert scheduler.get_status()["health"]["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_backlog_is_degraded(self, scheduler, store):
        scheduler.config.max_queue_size = 1
        await _due_task(store)
        await _due_task(store)
        report = await scheduler.check_health()
        assert report.status == HealthStatus.DEGRADED
        assert report.queue_depth == 2

    @pytest.mark.asyncio
    async def test_error_burst_is_degraded(self, scheduler):
        for _ in range(11):
            scheduler._record_error(MAIN_PROCESSOR, RuntimeError("boom"))
        report = await scheduler.check_health()
        assert report.status == HealthStatus.DEGRADED
        assert report.recent_error_count == 11


# ──────────────────────────────────────────────────────────────
#  Lifecycle
# ──────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler, store):
        await _due_task(store)
        await scheduler.start()
        try:
            for _ in range(50):
                if scheduler.jobs[MAIN_PROCESSOR].runs:
                    break
                await asyncio.sleep(0.01)
            status = scheduler.get_status()
            assert status["is_running"]
            assert sorted(status["active_jobs"]) == sorted(scheduler.jobs)
            assert status["jobs"][MAIN_PROCESSOR]["runs"] == 1
        finally:
            await scheduler.stop()

        status = scheduler.get_status()
        assert not status["is_running"]
        assert status["active_jobs"] == []
