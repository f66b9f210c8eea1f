"""
Follow-up Scheduler — background jobs that drive the follow-up sequence.

Runs inside the FastAPI lifespan as independent asyncio timer tasks:

    main_processor         due tasks → decide → strategy → send
    dead_lead_sweep        final-stage leads with no reply → dead
    performance_analytics  today's per-account metrics
    health_check           store reachability, backlog, error rate
    template_performance   per-template response/conversion rates

Every run goes through _run_job(): timed, logged, errors recorded in a
ring buffer, and skipped if the same job is still running.
"""
from __future__ import annotations

import asyncio
import structlog
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from channels.base import Transport
from config.settings import SchedulerConfig
from core.analytics import FollowUpAnalytics
from core.decision import DecisionEngine
from core.errors import PersistenceError, ValidationError
from core.strategy import StrategySelector
from database.store_base import BaseFollowUpStore
from models.schemas import (
    CycleStats, FollowUpTask, FollowUpTracking, HealthReport, HealthStatus,
    LeadState, MessageArtifact, MessageSender, SendResult, StrategyInput,
    TaskStatus, utcnow,
)

logger = structlog.get_logger()

MAIN_PROCESSOR = "main_processor"
DEAD_LEAD_SWEEP = "dead_lead_sweep"
PERFORMANCE_ANALYTICS = "performance_analytics"
HEALTH_CHECK = "health_check"
TEMPLATE_PERFORMANCE = "template_performance"

DEAD_LEAD_REASON = "no_response_final_stage"

# Outcomes of a single task, tallied into CycleStats
_PROCESSED, _FAILED, _SKIPPED, _DEAD = "processed", "failed", "skipped", "dead"


def batch_size_for(queue_depth: int) -> int:
    if queue_depth > 500:
        return 100
    if queue_depth > 200:
        return 75
    if queue_depth > 50:
        return 50
    return 25


class ScheduledJob:
    """One named periodic job and its run bookkeeping."""

    def __init__(self, name: str, interval_s: float,
                 handler: Callable[[], Awaitable[Any]], run_on_start: bool = False):
        self.name = name
        self.interval_s = interval_s
        self.handler = handler
        self.run_on_start = run_on_start
        self.running = False
        self.runs = 0
        self.failures = 0
        self.skips = 0
        self.last_run_at: Optional[datetime] = None
        self.last_duration_ms = 0.0
        self.last_error = ""
        self.task: Optional[asyncio.Task] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "interval_s": self.interval_s,
            "running": self.running,
            "active": self.task is not None and not self.task.done(),
            "runs": self.runs,
            "failures": self.failures,
            "skips": self.skips,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_duration_ms": round(self.last_duration_ms, 1),
            "last_error": self.last_error,
        }


class _Skipped:
    pass


SKIPPED = _Skipped()


class FollowUpScheduler:

    def __init__(
        self,
        store: BaseFollowUpStore,
        engine: DecisionEngine,
        selector: StrategySelector,
        transport: Transport,
        analytics: FollowUpAnalytics,
        config: SchedulerConfig = None,
        send_timeout_s: float = 30.0,
        history_window: int = 10,
    ):
        self.store = store
        self.engine = engine
        self.selector = selector
        self.transport = transport
        self.analytics = analytics
        self.config = config or SchedulerConfig()
        self.send_timeout_s = send_timeout_s
        self.history_window = history_window

        cfg = self.config
        self.jobs: dict[str, ScheduledJob] = {
            job.name: job for job in (
                ScheduledJob(MAIN_PROCESSOR, cfg.main_interval_s, self.process_due_tasks, run_on_start=True),
                ScheduledJob(DEAD_LEAD_SWEEP, cfg.dead_lead_interval_s, self.sweep_dead_leads),
                ScheduledJob(PERFORMANCE_ANALYTICS, cfg.analytics_interval_s, self.update_daily_analytics),
                ScheduledJob(HEALTH_CHECK, cfg.health_interval_s, self.check_health, run_on_start=True),
                ScheduledJob(TEMPLATE_PERFORMANCE, cfg.template_performance_interval_s,
                             self.update_template_performance),
            )
        }

        self._running = False
        self._errors: deque[dict[str, Any]] = deque(maxlen=100)
        self._health = HealthReport()
        self._stats: dict[str, Any] = {
            "cycles": 0,
            "total_processed": 0,
            "total_failed": 0,
            "total_skipped": 0,
            "total_dead": 0,
            "avg_processing_ms": 0.0,
            "last_cycle": None,
        }

    # ══════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start one timer task per job."""
        if self._running:
            return
        self._running = True
        for job in self.jobs.values():
            job.task = asyncio.create_task(self._job_loop(job), name=f"followup_{job.name}")
        logger.info("followup_scheduler_started", jobs=list(self.jobs))

    async def stop(self) -> None:
        """Cancel every timer; an in-flight run is cancelled with it."""
        self._running = False
        for job in self.jobs.values():
            if job.task and not job.task.done():
                job.task.cancel()
                try:
                    await job.task
                except asyncio.CancelledError:
                    pass
            job.task = None
        logger.info("followup_scheduler_stopped")

    async def _job_loop(self, job: ScheduledJob) -> None:
        if not job.run_on_start:
            await asyncio.sleep(job.interval_s)
        while self._running:
            try:
                await self._run_job(job)
            except asyncio.CancelledError:
                break
            await asyncio.sleep(job.interval_s)

    async def _run_job(self, job: ScheduledJob) -> Any:
        if job.running:
            job.skips += 1
            logger.warning("job_skipped_still_running", job=job.name)
            return SKIPPED

        job.running = True
        job.last_run_at = utcnow()
        started = time.monotonic()
        try:
            result = await job.handler()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            self._record_error(job.name, e)
            logger.error("job_failed", job=job.name, error=str(e),
                         duration_ms=round((time.monotonic() - started) * 1000, 1))
            return None
        finally:
            job.running = False
            job.runs += 1
            job.last_duration_ms = (time.monotonic() - started) * 1000

        logger.info("job_completed", job=job.name, duration_ms=round(job.last_duration_ms, 1))
        return result

    def _record_error(self, source: str, error: Exception) -> None:
        self._errors.append({
            "source": source,
            "error": str(error) or type(error).__name__,
            "at": utcnow(),
        })

    async def run_once(self) -> CycleStats:
        """One guarded main-processor pass, outside the timer."""
        result = await self._run_job(self.jobs[MAIN_PROCESSOR])
        if result is SKIPPED:
            return CycleStats(skipped_cycle=True)
        return result if result is not None else CycleStats()

    # ══════════════════════════════════════════════════════
    #  MAIN PROCESSOR
    # ══════════════════════════════════════════════════════

    async def process_due_tasks(self, now: Optional[datetime] = None) -> CycleStats:
        started = time.monotonic()
        now = now or utcnow()

        depth = await self.store.count_due_tasks(now)
        batch_size = batch_size_for(depth)
        tasks = await self.store.get_due_tasks(batch_size, now)
        stats = CycleStats(queue_depth=depth, batch_size=batch_size, task_ids=[t.id for t in tasks])

        semaphore = asyncio.Semaphore(self.config.task_concurrency)

        async def _bounded(task: FollowUpTask) -> str:
            async with semaphore:
                return await self.process_task(task, now)

        outcomes = await asyncio.gather(*(_bounded(t) for t in tasks))
        for outcome in outcomes:
            setattr(stats, outcome, getattr(stats, outcome) + 1)

        stats.duration_ms = (time.monotonic() - started) * 1000
        self._record_cycle(stats)
        return stats

    def _record_cycle(self, stats: CycleStats) -> None:
        cfg = self.config
        s = self._stats
        s["cycles"] += 1
        s["total_processed"] += stats.processed
        s["total_failed"] += stats.failed
        s["total_skipped"] += stats.skipped
        s["total_dead"] += stats.dead
        if s["cycles"] == 1:
            s["avg_processing_ms"] = stats.duration_ms
        else:
            s["avg_processing_ms"] = 0.8 * s["avg_processing_ms"] + 0.2 * stats.duration_ms
        s["last_cycle"] = stats.model_dump(exclude={"task_ids"})

        logger.info("cycle_completed", processed=stats.processed, failed=stats.failed,
                    skipped=stats.skipped, dead=stats.dead, queue_depth=stats.queue_depth,
                    batch_size=stats.batch_size, duration_ms=round(stats.duration_ms, 1))

        if stats.duration_ms > cfg.max_processing_time_s * 1000:
            logger.warning("cycle_slow", duration_ms=round(stats.duration_ms, 1),
                           limit_s=cfg.max_processing_time_s)
        if stats.failure_rate > cfg.max_failure_rate:
            logger.warning("cycle_failure_rate_high", failure_rate=round(stats.failure_rate, 3),
                           limit=cfg.max_failure_rate)
        if stats.queue_depth > cfg.max_queue_size:
            logger.warning("queue_backlog_high", queue_depth=stats.queue_depth,
                           limit=cfg.max_queue_size)

    async def process_task(self, task: FollowUpTask, now: datetime) -> str:
        """Process one due task. Returns the outcome; never raises."""
        try:
            lead = await self.store.get_lead(task.lead_id)
            if lead is None:
                raise ValidationError(f"Lead {task.lead_id} not found")
            if not lead.phone_number:
                raise ValidationError(f"Lead {lead.id} has no phone number")

            if lead.is_closed:
                reason = lead.follow_up_blocked_reason or lead.current_state.value
                await self.store.update_task(task.id, status=TaskStatus.DEAD,
                                             last_error=f"lead_ineligible:{reason}")
                logger.info("followup_skipped_ineligible", task_id=task.id, lead_id=lead.id, reason=reason)
                return _SKIPPED

            history = await self.store.get_conversation_history(lead.id, limit=self.history_window)
            decision = self.engine.decide(lead, history, now)
            result = await self.selector.select_strategy(decision, lead, history, task, now)
            artifact = await self.selector.execute(result)

            try:
                send = await asyncio.wait_for(
                    self.transport.send(lead.phone_number, artifact),
                    timeout=self.send_timeout_s,
                )
            except asyncio.TimeoutError:
                send = SendResult(success=False, error=f"Send timed out after {self.send_timeout_s}s")

            if not send.success:
                return await self._handle_failure(task, send.error, now)

            await self._complete(task, decision, artifact, send)
            return _PROCESSED

        except ValidationError as e:
            logger.warning("followup_invalid", task_id=task.id, error=str(e))
            try:
                await self.store.update_task(task.id, status=TaskStatus.DEAD, last_error=str(e))
            except PersistenceError as pe:
                self._record_error(MAIN_PROCESSOR, pe)
                logger.error("task_update_failed", task_id=task.id, error=str(pe))
            return _SKIPPED
        except PersistenceError as e:
            self._record_error(MAIN_PROCESSOR, e)
            logger.error("followup_persistence_failed", task_id=task.id, error=str(e))
            return _FAILED
        except Exception as e:
            self._record_error(MAIN_PROCESSOR, e)
            logger.error("followup_processing_failed", task_id=task.id, error=str(e))
            try:
                return await self._handle_failure(task, str(e), now)
            except PersistenceError as pe:
                logger.error("task_update_failed", task_id=task.id, error=str(pe))
                return _FAILED

    async def _handle_failure(self, task: FollowUpTask, error: str, now: datetime) -> str:
        if task.attempt_count >= task.max_retries:
            await self.store.update_task(task.id, status=TaskStatus.DEAD, last_error=error)
            logger.warning("followup_dead", task_id=task.id, attempts=task.attempt_count, error=error)
            return _DEAD

        delay = self.config.retry_delay_s * self.config.backoff_multiplier ** task.attempt_count
        retry_at = now + timedelta(seconds=delay)
        await self.store.update_task(
            task.id,
            status=TaskStatus.FAILED,
            attempt_count=task.attempt_count + 1,
            scheduled_time=retry_at,
            last_error=error,
        )
        logger.warning("followup_send_failed", task_id=task.id, attempt=task.attempt_count + 1,
                       retry_at=retry_at.isoformat(), error=error)
        return _FAILED

    async def _complete(self, task: FollowUpTask, decision: StrategyInput,
                        artifact: MessageArtifact, send: SendResult) -> None:
        sent_at = utcnow()
        await self.store.update_task(
            task.id,
            status=TaskStatus.SENT,
            sent_at=sent_at,
            template_id=artifact.template_id,
            strategy=artifact.kind,
            follow_up_type=decision.follow_up_type,
            last_error="",
        )
        logger.info("followup_sent", task_id=task.id, lead_id=task.lead_id,
                    strategy=artifact.kind.value, stage=task.sequence_stage, message_id=send.message_id)

        # The message is out; bookkeeping failures below must not cause a resend.
        try:
            await self.store.record_tracking(FollowUpTracking(
                account_id=task.account_id,
                lead_id=task.lead_id,
                task_id=task.id,
                template_id=artifact.template_id,
                follow_up_type=decision.follow_up_type,
                strategy=artifact.kind,
                sent_at=sent_at,
            ))
            if artifact.template_id:
                await self.store.increment_template_usage(artifact.template_id)
            await self._schedule_next_stage(task, decision)
        except PersistenceError as e:
            self._record_error(MAIN_PROCESSOR, e)
            logger.error("followup_bookkeeping_failed", task_id=task.id, error=str(e))

    async def _schedule_next_stage(self, task: FollowUpTask, decision: StrategyInput) -> None:
        max_stages = self.config.max_sequence_stages
        if task.is_final_attempt or task.sequence_stage >= max_stages:
            return
        next_stage = task.sequence_stage + 1
        next_task = FollowUpTask(
            lead_id=task.lead_id,
            account_id=task.account_id,
            scheduled_time=decision.timing.scheduled_time,
            max_retries=self.config.max_retries,
            sequence_stage=next_stage,
            is_final_attempt=next_stage >= max_stages,
        )
        await self.store.create_task(next_task)
        logger.info("followup_next_stage_scheduled", lead_id=task.lead_id, stage=next_stage,
                    scheduled_time=next_task.scheduled_time.isoformat(),
                    is_final=next_task.is_final_attempt)

    # ══════════════════════════════════════════════════════
    #  MAINTENANCE JOBS
    # ══════════════════════════════════════════════════════

    async def sweep_dead_leads(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Leads that ignored their final follow-up for a week are marked dead."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.dead_lead_after_days)
        marked = 0

        for final_task in await self.store.list_final_tasks_sent_before(cutoff):
            lead = await self.store.get_lead(final_task.lead_id)
            if lead is None or lead.current_state == LeadState.DEAD:
                continue
            history = await self.store.get_conversation_history(lead.id, limit=self.history_window)
            replied = any(
                m.sender == MessageSender.LEAD and m.created_at > final_task.sent_at
                for m in history
            )
            if replied:
                continue

            await self.store.update_lead(
                lead.id,
                current_state=LeadState.DEAD,
                follow_up_eligible=False,
                follow_up_blocked_reason=DEAD_LEAD_REASON,
            )
            for open_task in await self.store.list_tasks_for_lead(
                lead.id, statuses=[TaskStatus.PENDING, TaskStatus.FAILED],
            ):
                await self.store.update_task(open_task.id, status=TaskStatus.DEAD,
                                             last_error=DEAD_LEAD_REASON)
            marked += 1
            logger.info("lead_marked_dead", lead_id=lead.id, final_task_id=final_task.id)

        purged = await self.store.purge_tracking_before(
            now - timedelta(days=self.config.tracking_retention_days)
        )
        logger.info("dead_lead_sweep_completed", marked_dead=marked, tracking_purged=purged)
        return {"marked_dead": marked, "tracking_purged": purged}

    async def update_daily_analytics(self, now: Optional[datetime] = None) -> dict[str, Any]:
        day = self.analytics.today(now)
        results = {}
        for account_id in await self.store.list_account_ids():
            results[account_id] = await self.analytics.compute_daily_metrics(account_id, day)
        return results

    async def update_template_performance(self, now: Optional[datetime] = None) -> int:
        return await self.analytics.update_template_performance(
            self.config.template_performance_window_days, now,
        )

    async def check_health(self, now: Optional[datetime] = None) -> HealthReport:
        now = now or utcnow()
        report = HealthReport(checked_at=now)

        try:
            reachable = await self.store.ping()
        except Exception as e:
            logger.error("health_ping_failed", error=str(e))
            reachable = False

        if not reachable:
            report.status = HealthStatus.UNHEALTHY
            report.issues.append("Store unreachable")
        else:
            report.queue_depth = await self.store.count_due_tasks(now)
            if report.queue_depth > self.config.max_queue_size:
                report.status = HealthStatus.DEGRADED
                report.issues.append(f"Queue backlog {report.queue_depth} exceeds {self.config.max_queue_size}")

        window_start = now - timedelta(seconds=self.config.error_window_s)
        report.recent_error_count = sum(1 for e in self._errors if e["at"] >= window_start)
        if report.recent_error_count > self.config.error_threshold:
            if report.status == HealthStatus.HEALTHY:
                report.status = HealthStatus.DEGRADED
            report.issues.append(f"{report.recent_error_count} errors in the last hour")

        self._health = report
        if report.status != HealthStatus.HEALTHY:
            logger.warning("scheduler_health_degraded", status=report.status.value, issues=report.issues)
        return report

    # ══════════════════════════════════════════════════════
    #  STATUS
    # ══════════════════════════════════════════════════════

    @property
    def health(self) -> HealthReport:
        return self._health

    def recent_errors(self, limit: int = 10) -> list[dict[str, Any]]:
        return [
            {**e, "at": e["at"].isoformat()} for e in list(self._errors)[-limit:]
        ]

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "active_jobs": [name for name, job in self.jobs.items()
                            if job.task is not None and not job.task.done()],
            "jobs": {name: job.to_dict() for name, job in self.jobs.items()},
            "stats": dict(self._stats),
            "health": self._health.model_dump(mode="json"),
            "recent_errors": self.recent_errors(),
        }
