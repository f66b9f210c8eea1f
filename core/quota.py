"""
Quota Manager — Keeps each account under the WABA approved-template cap.

  can_create(account)       → QuotaCheck (read only; counts reservations)
  reserve(account)          → async context manager holding one slot
  enforce_limit(account)    → EnforcementResult (evicts at/above the cap)
  get_template_analytics()  → breakdown of the account's templates

Eviction runs ordered passes, each only while the count is still at or
above the cleanup target:
  1. unused           usage 0, older than the grace period
  2. stale_ai         old AI-generated templates with little usage
  3. low_performance  enough usage to judge, poor response rate
core_business templates are never candidates.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, AsyncGenerator, Optional

from channels.base import TemplateRegistry
from config.settings import QuotaConfig
from core.errors import PersistenceError, QuotaExceededError, RegistryInconsistencyError
from database.store_base import BaseFollowUpStore
from models.schemas import (
    EnforcementResult, QuotaCheck, Template, TemplateCategory, TemplateFilter,
    TemplateStatus, utcnow,
)

logger = structlog.get_logger()


class CleanupPass(IntEnum):
    UNUSED = 1
    STALE_AI = 2
    LOW_PERFORMANCE = 3


_PASS_LABELS = {
    CleanupPass.UNUSED: "unused",
    CleanupPass.STALE_AI: "old AI",
    CleanupPass.LOW_PERFORMANCE: "low-performing",
}


class QuotaManager:
    """Per-account template quota with eviction and slot reservation."""

    def __init__(self, store: BaseFollowUpStore, registry: TemplateRegistry, config: QuotaConfig = None):
        self.store = store
        self.registry = registry
        self.config = config or QuotaConfig()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._reserved: dict[str, int] = defaultdict(int)

    # ══════════════════════════════════════════════════════
    #  CAPACITY
    # ══════════════════════════════════════════════════════

    def reserved(self, account_id: str) -> int:
        return self._reserved.get(account_id, 0)

    async def can_create(self, account_id: str) -> QuotaCheck:
        limit = self.config.template_limit
        try:
            count = await self.store.count_quota_templates(account_id)
        except Exception as e:
            logger.error("quota_count_failed", account_id=account_id, error=str(e))
            return QuotaCheck(allowed=False, current_count=0, limit=limit, remaining_slots=0,
                              recommendation=f"Template count unavailable: {e}")

        effective = count + self.reserved(account_id)
        near = effective >= self.config.warning_threshold
        return QuotaCheck(
            allowed=effective < limit,
            current_count=count,
            limit=limit,
            remaining_slots=max(0, limit - effective),
            recommendation=(
                "Consider cleaning up unused templates before creating new ones"
                if near else "Safe to create new template"
            ),
        )

    @asynccontextmanager
    async def reserve(self, account_id: str) -> AsyncGenerator[None, None]:
        """
        Hold one template slot for the duration of the block.

        The slot is claimed under the account lock, so concurrent creators
        cannot both pass the check for the last free slot. Release happens on
        exit whether or not the block succeeded; by then the persisted record,
        approved or still pending approval, is counted by the store instead.
        """
        lock = self._locks[account_id]
        async with lock:
            count = await self.store.count_quota_templates(account_id)
            if count + self._reserved[account_id] >= self.config.template_limit:
                raise QuotaExceededError(account_id, count + self._reserved[account_id],
                                         self.config.template_limit)
            self._reserved[account_id] += 1
        try:
            yield
        finally:
            async with lock:
                self._reserved[account_id] = max(0, self._reserved[account_id] - 1)

    # ══════════════════════════════════════════════════════
    #  ENFORCEMENT
    # ══════════════════════════════════════════════════════

    async def enforce_limit(self, account_id: str) -> EnforcementResult:
        result = EnforcementResult(account_id=account_id)
        try:
            count = await self.store.count_quota_templates(account_id)
        except Exception as e:
            logger.error("quota_enforce_count_failed", account_id=account_id, error=str(e))
            result.error = str(e)
            return result

        result.count_before = result.count_after = count
        result.at_limit = count >= self.config.template_limit
        result.near_limit = count >= self.config.warning_threshold

        if result.at_limit:
            logger.warning("template_limit_reached", account_id=account_id, count=count)
            await self._run_cleanup(account_id, result)
        elif result.near_limit:
            logger.info("template_limit_near", account_id=account_id, count=count)
            result.recommendations = await self._recommendations(account_id)

        return result

    async def _run_cleanup(self, account_id: str, result: EnforcementResult) -> None:
        now = utcnow()
        count = result.count_before

        for cleanup_pass in CleanupPass:
            if count < self.config.cleanup_target:
                break
            try:
                candidates = await self.store.list_templates(self._pass_filter(cleanup_pass, account_id, now))
            except Exception as e:
                logger.error("cleanup_pass_query_failed", account_id=account_id,
                             cleanup_pass=cleanup_pass.name.lower(), error=str(e))
                continue

            removed = 0
            for template in candidates:
                if count < self.config.cleanup_target:
                    break
                if template.category == TemplateCategory.CORE_BUSINESS:
                    continue
                if await self._delete_template(account_id, template, result):
                    removed += 1
                    count -= 1
                    result.removed_ids.append(template.id)

            if removed:
                result.actions_taken.append(f"Removed {removed} {_PASS_LABELS[cleanup_pass]} templates")
            logger.info("cleanup_pass_completed", account_id=account_id,
                        cleanup_pass=cleanup_pass.name.lower(), removed=removed, count=count)

        try:
            result.count_after = await self.store.count_quota_templates(account_id)
        except Exception as e:
            logger.error("quota_recount_failed", account_id=account_id, error=str(e))
            result.count_after = count

        if result.count_after >= self.config.template_limit:
            logger.warning("template_cleanup_exhausted", account_id=account_id, count=result.count_after)
        logger.info("template_cleanup_completed", account_id=account_id,
                    removed=len(result.removed_ids), count_after=result.count_after)

    def _pass_filter(self, cleanup_pass: CleanupPass, account_id: str, now: datetime) -> TemplateFilter:
        cfg = self.config
        base = dict(
            account_id=account_id,
            status=TemplateStatus.APPROVED,
            exclude_categories=[TemplateCategory.CORE_BUSINESS],
        )
        if cleanup_pass == CleanupPass.UNUSED:
            return TemplateFilter(
                **base,
                usage_below=1,
                created_before=now - timedelta(days=cfg.unused_grace_days),
                order_by="created_at",
                limit=cfg.unused_batch,
            )
        if cleanup_pass == CleanupPass.STALE_AI:
            return TemplateFilter(
                **base,
                categories=[TemplateCategory.AI_GENERATED],
                usage_below=cfg.stale_ai_max_usage,
                created_before=now - timedelta(days=cfg.stale_ai_age_days),
                order_by="usage_count",
                limit=cfg.stale_ai_batch,
            )
        return TemplateFilter(
            **base,
            response_rate_below=cfg.low_perf_max_response_rate,
            usage_above=cfg.low_perf_min_usage,
            order_by="response_rate",
            limit=cfg.low_perf_batch,
        )

    async def _delete_template(self, account_id: str, template: Template, result: EnforcementResult) -> bool:
        """Remote copy first, then the local record. Remote failure does not block."""
        if template.remote_id:
            try:
                await self.registry.delete_remote_template(account_id, template.remote_id, template.name)
            except Exception as e:
                inconsistency = RegistryInconsistencyError(
                    template.id, f"Remote template {template.remote_id} of {template.id} left in registry: {e}",
                )
                logger.warning("remote_template_delete_failed",
                               account_id=account_id, template_id=template.id,
                               remote_id=template.remote_id, error=str(e))
                result.inconsistencies.append(inconsistency.template_id)
                result.registry_errors.append(str(inconsistency))

        try:
            deleted = await self.store.delete_template_record(template.id)
        except PersistenceError as e:
            logger.error("template_delete_failed", account_id=account_id,
                         template_id=template.id, error=str(e))
            return False

        if deleted:
            logger.info("template_deleted", account_id=account_id,
                        template_id=template.id, template_name=template.name)
        return deleted

    async def _recommendations(self, account_id: str) -> list[str]:
        now = utcnow()
        recommendations = []
        try:
            for cleanup_pass in (CleanupPass.UNUSED, CleanupPass.STALE_AI):
                query = self._pass_filter(cleanup_pass, account_id, now).model_copy(update={"limit": None})
                found = len(await self.store.list_templates(query))
                if found:
                    recommendations.append(f"Remove {found} {_PASS_LABELS[cleanup_pass]} templates")
        except Exception as e:
            logger.error("quota_recommendations_failed", account_id=account_id, error=str(e))
            return ["Review templates manually"]
        return recommendations

    # ══════════════════════════════════════════════════════
    #  ANALYTICS
    # ══════════════════════════════════════════════════════

    async def get_template_analytics(self, account_id: str) -> Optional[dict[str, Any]]:
        try:
            templates = await self.store.list_templates(TemplateFilter(account_id=account_id))
        except Exception as e:
            logger.error("template_analytics_failed", account_id=account_id, error=str(e))
            return None

        analytics: dict[str, Any] = {
            "total": len(templates),
            "by_status": {},
            "by_category": {},
            "by_usage": {"unused": 0, "low_usage": 0, "medium_usage": 0, "high_usage": 0},
            "by_performance": {"high_performing": 0, "medium_performing": 0,
                               "low_performing": 0, "no_data": 0},
            "oldest_template": None,
            "newest_template": None,
            "average_usage": 0.0,
            "reserved_slots": self.reserved(account_id),
        }

        for t in templates:
            analytics["by_status"][t.status.value] = analytics["by_status"].get(t.status.value, 0) + 1
            analytics["by_category"][t.category.value] = analytics["by_category"].get(t.category.value, 0) + 1

            if t.usage_count == 0:
                analytics["by_usage"]["unused"] += 1
            elif t.usage_count < 10:
                analytics["by_usage"]["low_usage"] += 1
            elif t.usage_count < 50:
                analytics["by_usage"]["medium_usage"] += 1
            else:
                analytics["by_usage"]["high_usage"] += 1

            if t.response_rate == 0:
                analytics["by_performance"]["no_data"] += 1
            elif t.response_rate >= 50:
                analytics["by_performance"]["high_performing"] += 1
            elif t.response_rate >= 20:
                analytics["by_performance"]["medium_performing"] += 1
            else:
                analytics["by_performance"]["low_performing"] += 1

        if templates:
            analytics["oldest_template"] = min(templates, key=lambda t: t.created_at).name
            analytics["newest_template"] = max(templates, key=lambda t: t.created_at).name
            analytics["average_usage"] = sum(t.usage_count for t in templates) / len(templates)

        return analytics
