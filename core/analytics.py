"""
Follow-up analytics — daily roll-ups and template performance.

Both read FollowUpTracking rows written by the scheduler (and updated by
the CRM when a lead replies or books) and write their results back
through the store.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import date, datetime, time as dtime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from database.store_base import BaseFollowUpStore
from models.schemas import FollowUpTracking, utcnow

logger = structlog.get_logger()


def summarize_tracking(rows: list[FollowUpTracking]) -> dict[str, Any]:
    by_type: dict[str, int] = defaultdict(int)
    by_strategy: dict[str, int] = defaultdict(int)
    for row in rows:
        if row.follow_up_type:
            by_type[row.follow_up_type.value] += 1
        if row.strategy:
            by_strategy[row.strategy.value] += 1

    responses = [r for r in rows if r.response_received]
    times = [r.response_time_minutes for r in responses if r.response_time_minutes is not None]
    total = len(rows)
    return {
        "total_sent": total,
        "by_follow_up_type": dict(by_type),
        "by_strategy": dict(by_strategy),
        "responses": len(responses),
        "appointments": sum(1 for r in rows if r.led_to_appointment),
        "response_rate": round(len(responses) / total * 100, 2) if total else 0.0,
        "avg_response_minutes": round(sum(times) / len(times), 1) if times else None,
    }


class FollowUpAnalytics:

    def __init__(self, store: BaseFollowUpStore, timezone_name: str = "Asia/Singapore"):
        self.store = store
        self.tz = ZoneInfo(timezone_name)

    def _day_bounds(self, day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, dtime(0), tzinfo=self.tz)
        return start, start + timedelta(days=1)

    def today(self, now: Optional[datetime] = None) -> date:
        return (now or utcnow()).astimezone(self.tz).date()

    async def compute_daily_metrics(self, account_id: str, day: date) -> dict[str, Any]:
        """Roll up one account's follow-ups for a local calendar day and persist them."""
        since, until = self._day_bounds(day)
        rows = await self.store.list_tracking(account_id=account_id, since=since, until=until)
        metrics = {"day": day.isoformat(), **summarize_tracking(rows)}
        await self.store.upsert_daily_metrics(account_id, day, metrics)
        logger.info("daily_metrics_updated", account_id=account_id, day=day.isoformat(),
                    total_sent=metrics["total_sent"], responses=metrics["responses"])
        return metrics

    async def update_template_performance(self, window_days: int = 30,
                                          now: Optional[datetime] = None) -> int:
        """Recompute response/conversion rates (percent) per template over the window."""
        since = (now or utcnow()) - timedelta(days=window_days)
        rows = await self.store.list_tracking(since=since)

        grouped: dict[str, list[FollowUpTracking]] = defaultdict(list)
        for row in rows:
            if row.template_id:
                grouped[row.template_id].append(row)

        for template_id, sends in grouped.items():
            total = len(sends)
            response_rate = sum(1 for r in sends if r.response_received) / total * 100
            conversion_rate = sum(1 for r in sends if r.led_to_appointment) / total * 100
            await self.store.update_template_performance(
                template_id, round(response_rate, 2), round(conversion_rate, 2),
            )

        logger.info("template_performance_updated", templates=len(grouped), window_days=window_days)
        return len(grouped)
