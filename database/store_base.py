"""
Abstract Follow-Up Store — Interface for all storage backends.

Implementations:
  - SqlFollowUpStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFollowUpStore (dict-based, single-process, no persistence)

The core only needs task/template/lead/tracking CRUD and counting; the
lead and conversation tables are owned by the CRM and read here.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Optional

from core.errors import PersistenceError
from models.schemas import (
    ConversationMessage, FollowUpTask, FollowUpTracking, Lead,
    TaskStatus, Template, TemplateFilter,
)


def check_task_update(task: FollowUpTask, fields: dict[str, Any]) -> None:
    """Reject updates that would mutate a terminal task or move it backwards."""
    if task.is_terminal:
        raise PersistenceError(f"Task {task.id} is {task.status.value} and cannot be modified")
    new_status = fields.get("status")
    if new_status is not None and not task.can_transition(TaskStatus(new_status)):
        raise PersistenceError(
            f"Illegal task transition {task.status.value} -> {TaskStatus(new_status).value} for {task.id}"
        )


class BaseFollowUpStore(ABC):
    """Interface that all follow-up store backends must implement."""

    # ── Leads ─────────────────────────────────────────────────

    @abstractmethod
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        ...

    @abstractmethod
    async def upsert_lead(self, lead: Lead) -> Lead:
        ...

    @abstractmethod
    async def update_lead(self, lead_id: str, **fields) -> Optional[Lead]:
        ...

    # ── Conversation ──────────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: ConversationMessage) -> ConversationMessage:
        ...

    @abstractmethod
    async def get_conversation_history(self, lead_id: str, limit: int = 10) -> list[ConversationMessage]:
        """Last `limit` messages for a lead, oldest first."""
        ...

    # ── Follow-up tasks ───────────────────────────────────────

    @abstractmethod
    async def create_task(self, task: FollowUpTask) -> FollowUpTask:
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[FollowUpTask]:
        ...

    @abstractmethod
    async def get_due_tasks(self, limit: int, now: datetime) -> list[FollowUpTask]:
        """Pending or failed tasks with scheduled_time <= now, earliest first."""
        ...

    @abstractmethod
    async def count_due_tasks(self, now: datetime) -> int:
        ...

    @abstractmethod
    async def update_task(self, task_id: str, **fields) -> FollowUpTask:
        """Apply field updates. Raises PersistenceError on a missing task or illegal transition."""
        ...

    @abstractmethod
    async def list_tasks_for_lead(self, lead_id: str, statuses: Optional[list[TaskStatus]] = None) -> list[FollowUpTask]:
        ...

    @abstractmethod
    async def list_final_tasks_sent_before(self, cutoff: datetime) -> list[FollowUpTask]:
        ...

    # ── Templates ─────────────────────────────────────────────

    @abstractmethod
    async def count_approved_templates(self, account_id: str) -> int:
        ...

    @abstractmethod
    async def count_quota_templates(self, account_id: str) -> int:
        """Templates holding a registry slot: approved plus pending approval."""
        ...

    @abstractmethod
    async def list_templates(self, query: TemplateFilter) -> list[Template]:
        ...

    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[Template]:
        ...

    @abstractmethod
    async def create_template_record(self, template: Template) -> Template:
        ...

    @abstractmethod
    async def delete_template_record(self, template_id: str) -> bool:
        ...

    @abstractmethod
    async def increment_template_usage(self, template_id: str) -> None:
        ...

    @abstractmethod
    async def update_template_performance(self, template_id: str, response_rate: float,
                                          conversion_rate: float) -> None:
        ...

    # ── Tracking ──────────────────────────────────────────────

    @abstractmethod
    async def record_tracking(self, tracking: FollowUpTracking) -> FollowUpTracking:
        ...

    @abstractmethod
    async def list_tracking(self, account_id: Optional[str] = None, since: Optional[datetime] = None,
                            until: Optional[datetime] = None) -> list[FollowUpTracking]:
        ...

    @abstractmethod
    async def purge_tracking_before(self, cutoff: datetime) -> int:
        ...

    # ── Daily metrics ─────────────────────────────────────────

    @abstractmethod
    async def upsert_daily_metrics(self, account_id: str, day: date, metrics: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def get_daily_metrics(self, account_id: str, day: date) -> Optional[dict[str, Any]]:
        ...

    # ── Misc ──────────────────────────────────────────────────

    @abstractmethod
    async def list_account_ids(self) -> list[str]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        pass
