"""
InMemoryFollowUpStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlFollowUpStore
  - Safe under a single asyncio event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Optional

from core.errors import PersistenceError
from database.store_base import BaseFollowUpStore, check_task_update
from models.schemas import (
    ConversationMessage, FollowUpTask, FollowUpTracking, Lead,
    TaskStatus, Template, TemplateFilter, TemplateStatus, utcnow,
)

logger = structlog.get_logger()

_DUE_STATUSES = {TaskStatus.PENDING, TaskStatus.FAILED}
_QUOTA_STATUSES = {TemplateStatus.APPROVED, TemplateStatus.PENDING}


class InMemoryFollowUpStore(BaseFollowUpStore):
    """
    Full-featured in-memory store with the same interface as SqlFollowUpStore.
    Hands out copies so callers never mutate stored state by accident.
    """

    def __init__(self):
        self._leads: dict[str, Lead] = {}
        self._messages: dict[str, list[ConversationMessage]] = defaultdict(list)  # lead_id → messages
        self._tasks: dict[str, FollowUpTask] = {}
        self._templates: dict[str, Template] = {}
        self._tracking: dict[str, FollowUpTracking] = {}
        self._daily_metrics: dict[tuple[str, date], dict[str, Any]] = {}
        logger.info("inmemory_store_initialized")

    # ── Leads ─────────────────────────────────────────────

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def upsert_lead(self, lead: Lead) -> Lead:
        self._leads[lead.id] = lead.model_copy(deep=True)
        return lead

    async def update_lead(self, lead_id: str, **fields) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        if lead is None:
            return None
        updated = Lead.model_validate({**lead.model_dump(), **fields})
        self._leads[lead_id] = updated
        return updated.model_copy(deep=True)

    # ── Conversation ──────────────────────────────────────

    async def add_message(self, message: ConversationMessage) -> ConversationMessage:
        msgs = self._messages[message.lead_id]
        msgs.append(message.model_copy(deep=True))
        msgs.sort(key=lambda m: m.created_at)
        return message

    async def get_conversation_history(self, lead_id: str, limit: int = 10) -> list[ConversationMessage]:
        msgs = self._messages.get(lead_id, [])
        return [m.model_copy(deep=True) for m in msgs[-limit:]] if limit > 0 else []

    # ── Follow-up tasks ───────────────────────────────────

    async def create_task(self, task: FollowUpTask) -> FollowUpTask:
        if task.id in self._tasks:
            raise PersistenceError(f"Task {task.id} already exists")
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def get_task(self, task_id: str) -> Optional[FollowUpTask]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def _due(self, now: datetime) -> list[FollowUpTask]:
        due = [
            t for t in self._tasks.values()
            if t.status in _DUE_STATUSES and t.scheduled_time <= now
        ]
        due.sort(key=lambda t: t.scheduled_time)
        return due

    async def get_due_tasks(self, limit: int, now: datetime) -> list[FollowUpTask]:
        return [t.model_copy(deep=True) for t in self._due(now)[:limit]]

    async def count_due_tasks(self, now: datetime) -> int:
        return len(self._due(now))

    async def update_task(self, task_id: str, **fields) -> FollowUpTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise PersistenceError(f"Task {task_id} not found")
        check_task_update(task, fields)
        updated = FollowUpTask.model_validate({**task.model_dump(), **fields, "updated_at": utcnow()})
        self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    async def list_tasks_for_lead(self, lead_id: str, statuses: Optional[list[TaskStatus]] = None) -> list[FollowUpTask]:
        tasks = [
            t for t in self._tasks.values()
            if t.lead_id == lead_id and (not statuses or t.status in statuses)
        ]
        tasks.sort(key=lambda t: t.scheduled_time)
        return [t.model_copy(deep=True) for t in tasks]

    async def list_final_tasks_sent_before(self, cutoff: datetime) -> list[FollowUpTask]:
        return [
            t.model_copy(deep=True) for t in self._tasks.values()
            if t.is_final_attempt and t.status == TaskStatus.SENT
            and t.sent_at is not None and t.sent_at <= cutoff
        ]

    # ── Templates ─────────────────────────────────────────

    async def count_approved_templates(self, account_id: str) -> int:
        return sum(
            1 for t in self._templates.values()
            if t.account_id == account_id and t.status == TemplateStatus.APPROVED
        )

    async def count_quota_templates(self, account_id: str) -> int:
        return sum(
            1 for t in self._templates.values()
            if t.account_id == account_id and t.status in _QUOTA_STATUSES
        )

    async def list_templates(self, query: TemplateFilter) -> list[Template]:
        matched = [t for t in self._templates.values() if query.matches(t)]
        matched.sort(key=lambda t: (getattr(t, query.order_by), t.created_at), reverse=query.descending)
        if query.limit is not None:
            matched = matched[:query.limit]
        return [t.model_copy(deep=True) for t in matched]

    async def get_template(self, template_id: str) -> Optional[Template]:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def create_template_record(self, template: Template) -> Template:
        self._templates[template.id] = template.model_copy(deep=True)
        return template

    async def delete_template_record(self, template_id: str) -> bool:
        return self._templates.pop(template_id, None) is not None

    async def increment_template_usage(self, template_id: str) -> None:
        template = self._templates.get(template_id)
        if template:
            template.usage_count += 1
            template.last_used_at = utcnow()

    async def update_template_performance(self, template_id: str, response_rate: float,
                                          conversion_rate: float) -> None:
        template = self._templates.get(template_id)
        if template:
            template.response_rate = response_rate
            template.conversion_rate = conversion_rate

    # ── Tracking ──────────────────────────────────────────

    async def record_tracking(self, tracking: FollowUpTracking) -> FollowUpTracking:
        self._tracking[tracking.id] = tracking.model_copy(deep=True)
        return tracking

    async def list_tracking(self, account_id: Optional[str] = None, since: Optional[datetime] = None,
                            until: Optional[datetime] = None) -> list[FollowUpTracking]:
        rows = [
            r for r in self._tracking.values()
            if (account_id is None or r.account_id == account_id)
            and (since is None or r.sent_at >= since)
            and (until is None or r.sent_at < until)
        ]
        rows.sort(key=lambda r: r.sent_at)
        return [r.model_copy(deep=True) for r in rows]

    async def purge_tracking_before(self, cutoff: datetime) -> int:
        stale = [k for k, r in self._tracking.items() if r.sent_at < cutoff]
        for k in stale:
            del self._tracking[k]
        return len(stale)

    # ── Daily metrics ─────────────────────────────────────

    async def upsert_daily_metrics(self, account_id: str, day: date, metrics: dict[str, Any]) -> None:
        self._daily_metrics[(account_id, day)] = dict(metrics)

    async def get_daily_metrics(self, account_id: str, day: date) -> Optional[dict[str, Any]]:
        metrics = self._daily_metrics.get((account_id, day))
        return dict(metrics) if metrics is not None else None

    # ── Misc ──────────────────────────────────────────────

    async def list_account_ids(self) -> list[str]:
        ids = {l.account_id for l in self._leads.values()}
        ids.update(t.account_id for t in self._tasks.values())
        ids.update(t.account_id for t in self._templates.values())
        return sorted(ids)

    async def ping(self) -> bool:
        return True
