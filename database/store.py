"""
SqlFollowUpStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Rows are converted to pydantic models at the boundary; callers never see
ORM objects. Driver errors surface as PersistenceError.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator, Optional, Type

from pydantic import BaseModel
from sqlalchemy import select, update, delete, func, and_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import PersistenceError
from database.models import (
    Base, LeadRow, MessageRow, FollowUpTaskRow, TemplateRow,
    TrackingRow, DailyMetricsRow,
)
from database.session import Database
from database.store_base import BaseFollowUpStore, check_task_update
from models.schemas import (
    ConversationMessage, FollowUpTask, FollowUpTracking, Lead,
    TaskStatus, Template, TemplateFilter, TemplateStatus, utcnow,
)

logger = structlog.get_logger()

_DUE_STATUSES = [TaskStatus.PENDING.value, TaskStatus.FAILED.value]
_QUOTA_STATUSES = [TemplateStatus.APPROVED.value, TemplateStatus.PENDING.value]
_TEMPLATE_ORDER = {
    "created_at": TemplateRow.created_at,
    "usage_count": TemplateRow.usage_count,
    "response_rate": TemplateRow.response_rate,
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _as_utc(value)
    return value


def _to_columns(model: BaseModel) -> dict[str, Any]:
    return {k: _to_column(v) for k, v in model.model_dump().items()}


def _row_to_model(row: Base, model_cls: Type[BaseModel]):
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = _as_utc(value)
        data[column.key] = value
    return model_cls.model_validate(data)


class SqlFollowUpStore(BaseFollowUpStore):
    """
    Persistent follow-up store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, database: Database):
        self._db = database

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._db.session() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error("sql_store_error", error=str(e))
            raise PersistenceError(str(e), retryable=True) from e

    # ── Leads ──────────────────────────────────────────────

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        async with self._session() as db:
            row = await db.get(LeadRow, lead_id)
            return _row_to_model(row, Lead) if row else None

    async def upsert_lead(self, lead: Lead) -> Lead:
        async with self._session() as db:
            values = _to_columns(lead)
            existing = await db.get(LeadRow, lead.id)
            if existing:
                for key, value in values.items():
                    setattr(existing, key, value)
            else:
                db.add(LeadRow(**values))
            return lead

    async def update_lead(self, lead_id: str, **fields) -> Optional[Lead]:
        async with self._session() as db:
            row = await db.get(LeadRow, lead_id)
            if row is None:
                return None
            lead = Lead.model_validate({**_row_to_model(row, Lead).model_dump(), **fields})
            for key, value in _to_columns(lead).items():
                setattr(row, key, value)
            return lead

    # ── Conversation ───────────────────────────────────────

    async def add_message(self, message: ConversationMessage) -> ConversationMessage:
        async with self._session() as db:
            db.add(MessageRow(**_to_columns(message)))
            return message

    async def get_conversation_history(self, lead_id: str, limit: int = 10) -> list[ConversationMessage]:
        if limit <= 0:
            return []
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.lead_id == lead_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = list(result.scalars())
            return [_row_to_model(r, ConversationMessage) for r in reversed(rows)]

    # ── Follow-up tasks ────────────────────────────────────

    async def create_task(self, task: FollowUpTask) -> FollowUpTask:
        async with self._session() as db:
            db.add(FollowUpTaskRow(**_to_columns(task)))
            return task

    async def get_task(self, task_id: str) -> Optional[FollowUpTask]:
        async with self._session() as db:
            row = await db.get(FollowUpTaskRow, task_id)
            return _row_to_model(row, FollowUpTask) if row else None

    def _due_clause(self, now: datetime):
        return and_(
            FollowUpTaskRow.status.in_(_DUE_STATUSES),
            FollowUpTaskRow.scheduled_time <= _as_utc(now),
        )

    async def get_due_tasks(self, limit: int, now: datetime) -> list[FollowUpTask]:
        async with self._session() as db:
            stmt = (
                select(FollowUpTaskRow)
                .where(self._due_clause(now))
                .order_by(FollowUpTaskRow.scheduled_time.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [_row_to_model(r, FollowUpTask) for r in result.scalars()]

    async def count_due_tasks(self, now: datetime) -> int:
        async with self._session() as db:
            stmt = select(func.count()).select_from(FollowUpTaskRow).where(self._due_clause(now))
            return int((await db.execute(stmt)).scalar_one())

    async def update_task(self, task_id: str, **fields) -> FollowUpTask:
        async with self._session() as db:
            row = await db.get(FollowUpTaskRow, task_id)
            if row is None:
                raise PersistenceError(f"Task {task_id} not found")
            task = _row_to_model(row, FollowUpTask)
            check_task_update(task, fields)
            updated = FollowUpTask.model_validate({**task.model_dump(), **fields, "updated_at": utcnow()})
            for key, value in _to_columns(updated).items():
                setattr(row, key, value)
            return updated

    async def list_tasks_for_lead(self, lead_id: str, statuses: Optional[list[TaskStatus]] = None) -> list[FollowUpTask]:
        async with self._session() as db:
            stmt = select(FollowUpTaskRow).where(FollowUpTaskRow.lead_id == lead_id)
            if statuses:
                stmt = stmt.where(FollowUpTaskRow.status.in_([s.value for s in statuses]))
            stmt = stmt.order_by(FollowUpTaskRow.scheduled_time.asc())
            result = await db.execute(stmt)
            return [_row_to_model(r, FollowUpTask) for r in result.scalars()]

    async def list_final_tasks_sent_before(self, cutoff: datetime) -> list[FollowUpTask]:
        async with self._session() as db:
            stmt = select(FollowUpTaskRow).where(and_(
                FollowUpTaskRow.is_final_attempt.is_(True),
                FollowUpTaskRow.status == TaskStatus.SENT.value,
                FollowUpTaskRow.sent_at.is_not(None),
                FollowUpTaskRow.sent_at <= _as_utc(cutoff),
            ))
            result = await db.execute(stmt)
            return [_row_to_model(r, FollowUpTask) for r in result.scalars()]

    # ── Templates ──────────────────────────────────────────

    async def count_approved_templates(self, account_id: str) -> int:
        async with self._session() as db:
            stmt = select(func.count()).select_from(TemplateRow).where(and_(
                TemplateRow.account_id == account_id,
                TemplateRow.status == TemplateStatus.APPROVED.value,
            ))
            return int((await db.execute(stmt)).scalar_one())

    async def count_quota_templates(self, account_id: str) -> int:
        async with self._session() as db:
            stmt = select(func.count()).select_from(TemplateRow).where(and_(
                TemplateRow.account_id == account_id,
                TemplateRow.status.in_(_QUOTA_STATUSES),
            ))
            return int((await db.execute(stmt)).scalar_one())

    async def list_templates(self, query: TemplateFilter) -> list[Template]:
        conditions = []
        if query.account_id is not None:
            conditions.append(TemplateRow.account_id == query.account_id)
        if query.status is not None:
            conditions.append(TemplateRow.status == query.status.value)
        if query.categories:
            conditions.append(TemplateRow.category.in_([c.value for c in query.categories]))
        if query.exclude_categories:
            conditions.append(TemplateRow.category.not_in([c.value for c in query.exclude_categories]))
        if query.usage_below is not None:
            conditions.append(TemplateRow.usage_count < query.usage_below)
        if query.usage_above is not None:
            conditions.append(TemplateRow.usage_count > query.usage_above)
        if query.response_rate_below is not None:
            conditions.append(TemplateRow.response_rate < query.response_rate_below)
        if query.created_before is not None:
            conditions.append(TemplateRow.created_at < _as_utc(query.created_before))
        if query.lead_state is not None:
            conditions.append(TemplateRow.lead_state == query.lead_state)
        if query.stage_category is not None:
            conditions.append(TemplateRow.stage_category == query.stage_category)

        order_col = _TEMPLATE_ORDER.get(query.order_by, TemplateRow.created_at)
        ordering = [order_col.desc(), TemplateRow.created_at.desc()] if query.descending \
            else [order_col.asc(), TemplateRow.created_at.asc()]

        async with self._session() as db:
            stmt = select(TemplateRow)
            if conditions:
                stmt = stmt.where(and_(*conditions))
            stmt = stmt.order_by(*ordering)
            if query.limit is not None:
                stmt = stmt.limit(query.limit)
            result = await db.execute(stmt)
            return [_row_to_model(r, Template) for r in result.scalars()]

    async def get_template(self, template_id: str) -> Optional[Template]:
        async with self._session() as db:
            row = await db.get(TemplateRow, template_id)
            return _row_to_model(row, Template) if row else None

    async def create_template_record(self, template: Template) -> Template:
        async with self._session() as db:
            db.add(TemplateRow(**_to_columns(template)))
            return template

    async def delete_template_record(self, template_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(delete(TemplateRow).where(TemplateRow.id == template_id))
            return result.rowcount > 0

    async def increment_template_usage(self, template_id: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(TemplateRow)
                .where(TemplateRow.id == template_id)
                .values(usage_count=TemplateRow.usage_count + 1, last_used_at=utcnow())
            )

    async def update_template_performance(self, template_id: str, response_rate: float,
                                          conversion_rate: float) -> None:
        async with self._session() as db:
            await db.execute(
                update(TemplateRow)
                .where(TemplateRow.id == template_id)
                .values(response_rate=response_rate, conversion_rate=conversion_rate)
            )

    # ── Tracking ───────────────────────────────────────────

    async def record_tracking(self, tracking: FollowUpTracking) -> FollowUpTracking:
        async with self._session() as db:
            db.add(TrackingRow(**_to_columns(tracking)))
            return tracking

    async def list_tracking(self, account_id: Optional[str] = None, since: Optional[datetime] = None,
                            until: Optional[datetime] = None) -> list[FollowUpTracking]:
        async with self._session() as db:
            stmt = select(TrackingRow)
            if account_id is not None:
                stmt = stmt.where(TrackingRow.account_id == account_id)
            if since is not None:
                stmt = stmt.where(TrackingRow.sent_at >= _as_utc(since))
            if until is not None:
                stmt = stmt.where(TrackingRow.sent_at < _as_utc(until))
            stmt = stmt.order_by(TrackingRow.sent_at.asc())
            result = await db.execute(stmt)
            return [_row_to_model(r, FollowUpTracking) for r in result.scalars()]

    async def purge_tracking_before(self, cutoff: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(delete(TrackingRow).where(TrackingRow.sent_at < _as_utc(cutoff)))
            return result.rowcount or 0

    # ── Daily metrics ──────────────────────────────────────

    async def upsert_daily_metrics(self, account_id: str, day: date, metrics: dict[str, Any]) -> None:
        async with self._session() as db:
            stmt = select(DailyMetricsRow).where(and_(
                DailyMetricsRow.account_id == account_id,
                DailyMetricsRow.day == day,
            ))
            existing = (await db.execute(stmt)).scalar_one_or_none()
            if existing:
                existing.metrics = dict(metrics)
            else:
                db.add(DailyMetricsRow(account_id=account_id, day=day, metrics=dict(metrics)))

    async def get_daily_metrics(self, account_id: str, day: date) -> Optional[dict[str, Any]]:
        async with self._session() as db:
            stmt = select(DailyMetricsRow).where(and_(
                DailyMetricsRow.account_id == account_id,
                DailyMetricsRow.day == day,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            return dict(row.metrics or {}) if row else None

    # ── Misc ───────────────────────────────────────────────

    async def list_account_ids(self) -> list[str]:
        async with self._session() as db:
            ids: set[str] = set()
            for col in (LeadRow.account_id, FollowUpTaskRow.account_id, TemplateRow.account_id):
                result = await db.execute(select(col).distinct())
                ids.update(result.scalars())
            return sorted(ids)

    async def ping(self) -> bool:
        try:
            async with self._session() as db:
                await db.execute(text("SELECT 1"))
            return True
        except PersistenceError:
            return False

    async def close(self) -> None:
        await self._db.close()
