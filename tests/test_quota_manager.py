"""Tests for the QuotaManager: capacity checks, reservations and eviction passes."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import ACCOUNT, seed_templates
from config.settings import QuotaConfig
from core.errors import PersistenceError, QuotaExceededError
from core.quota import CleanupPass, QuotaManager
from models.schemas import TemplateCategory, TemplateStatus, utcnow


@pytest.fixture
def quota(store, registry):
    return QuotaManager(store, registry, QuotaConfig())


def _old(days):
    return utcnow() - timedelta(days=days)


async def _healthy(store, count, **overrides):
    """Templates that no eviction pass will pick: used, responsive."""
    fields = dict(usage_count=12, response_rate=50.0, created_at=_old(200))
    fields.update(overrides)
    return await seed_templates(store, count, **fields)


# ──────────────────────────────────────────────────────────────
#  Capacity
# ──────────────────────────────────────────────────────────────

class TestCanCreate:
    @pytest.mark.asyncio
    async def test_room_available(self, quota, store):
        await _healthy(store, 10)
        check = await quota.can_create(ACCOUNT)
        assert check.allowed
        assert check.current_count == 10
        assert check.remaining_slots == 240
        assert check.recommendation == "Safe to create new template"

    @pytest.mark.asyncio
    async def test_near_limit_recommends_cleanup(self, quota, store):
        await _healthy(store, 210)
        check = await quota.can_create(ACCOUNT)
        assert check.allowed
        assert "clean" in check.recommendation.lower()

    @pytest.mark.asyncio
    async def test_full_is_denied(self, quota, store):
        await _healthy(store, 250)
        check = await quota.can_create(ACCOUNT)
        assert not check.allowed
        assert check.remaining_slots == 0

    @pytest.mark.asyncio
    async def test_other_accounts_and_deleted_not_counted(self, quota, store):
        await _healthy(store, 249)
        await _healthy(store, 5, status=TemplateStatus.DELETED)
        await _healthy(store, 5, account_id="other")
        assert (await quota.can_create(ACCOUNT)).allowed

    @pytest.mark.asyncio
    async def test_pending_templates_hold_slots(self, quota, store):
        await _healthy(store, 245)
        await _healthy(store, 5, status=TemplateStatus.PENDING)
        check = await quota.can_create(ACCOUNT)
        assert not check.allowed
        assert check.current_count == 250
        with pytest.raises(QuotaExceededError):
            async with quota.reserve(ACCOUNT):
                pass

    @pytest.mark.asyncio
    async def test_store_error_denies(self, registry):
        store = AsyncMock()
        store.count_quota_templates.side_effect = PersistenceError("db down")
        check = await QuotaManager(store, registry).can_create(ACCOUNT)
        assert not check.allowed


class TestReserve:
    @pytest.mark.asyncio
    async def test_reservation_counts_against_quota(self, quota, store):
        await _healthy(store, 249)
        async with quota.reserve(ACCOUNT):
            assert quota.reserved(ACCOUNT) == 1
            assert not (await quota.can_create(ACCOUNT)).allowed
        assert quota.reserved(ACCOUNT) == 0
        assert (await quota.can_create(ACCOUNT)).allowed

    @pytest.mark.asyncio
    async def test_released_when_block_fails(self, quota, store):
        with pytest.raises(RuntimeError):
            async with quota.reserve(ACCOUNT):
                raise RuntimeError("registry exploded")
        assert quota.reserved(ACCOUNT) == 0

    @pytest.mark.asyncio
    async def test_full_raises(self, quota, store):
        await _healthy(store, 250)
        with pytest.raises(QuotaExceededError):
            async with quota.reserve(ACCOUNT):
                pass

    @pytest.mark.asyncio
    async def test_concurrent_creators_cannot_share_last_slot(self, quota, store):
        await _healthy(store, 249)
        outcomes = []

        async def creator():
            try:
                async with quota.reserve(ACCOUNT):
                    await asyncio.sleep(0.01)
                    outcomes.append("created")
            except QuotaExceededError:
                outcomes.append("denied")

        await asyncio.gather(creator(), creator())
        assert sorted(outcomes) == ["created", "denied"]


# ──────────────────────────────────────────────────────────────
#  Enforcement
# ──────────────────────────────────────────────────────────────

class TestEnforceLimit:
    @pytest.mark.asyncio
    async def test_below_warning_does_nothing(self, quota, store):
        await _healthy(store, 50)
        result = await quota.enforce_limit(ACCOUNT)
        assert not result.near_limit
        assert not result.at_limit
        assert result.removed_ids == []
        assert result.recommendations == []

    @pytest.mark.asyncio
    async def test_warning_band_only_recommends(self, quota, store):
        await _healthy(store, 200)
        await seed_templates(store, 12, usage_count=0, created_at=_old(30))
        result = await quota.enforce_limit(ACCOUNT)
        assert result.near_limit and not result.at_limit
        assert result.removed_ids == []
        assert result.recommendations == ["Remove 12 unused templates"]
        assert await store.count_approved_templates(ACCOUNT) == 212

    @pytest.mark.asyncio
    async def test_full_with_thirty_unused_removes_twenty(self, quota, store, registry):
        await _healthy(store, 220)
        unused = await seed_templates(store, 30, usage_count=0, created_at=_old(10), remote_id="r")

        result = await quota.enforce_limit(ACCOUNT)

        assert result.at_limit
        assert result.count_before == 250
        assert len(result.removed_ids) == 20
        assert result.count_after == 230
        assert await store.count_approved_templates(ACCOUNT) == 230
        assert result.actions_taken == ["Removed 20 unused templates"]
        assert len(registry.deleted) == 20
        # oldest first
        oldest = sorted(unused, key=lambda t: t.created_at)[:20]
        assert set(result.removed_ids) == {t.id for t in oldest}

    @pytest.mark.asyncio
    async def test_fresh_unused_templates_are_kept(self, quota, store):
        await _healthy(store, 220)
        await seed_templates(store, 30, usage_count=0, created_at=_old(2))
        result = await quota.enforce_limit(ACCOUNT)
        assert result.removed_ids == []
        assert result.count_after == 250

    @pytest.mark.asyncio
    async def test_passes_run_in_order_until_below_target(self, quota, store):
        await _healthy(store, 200)
        await seed_templates(store, 20, usage_count=0, created_at=_old(10))
        stale_ai = await seed_templates(store, 15, category=TemplateCategory.AI_GENERATED,
                                        usage_count=2, created_at=_old(120), response_rate=40.0)
        weak = await seed_templates(store, 15, usage_count=30, response_rate=5.0, created_at=_old(60))

        result = await quota.enforce_limit(ACCOUNT)

        assert result.count_before == 250
        assert result.actions_taken == [
            "Removed 20 unused templates",
            "Removed 15 old AI templates",
            "Removed 10 low-performing templates",
        ]
        assert result.count_after == 205
        assert {t.id for t in stale_ai} <= set(result.removed_ids)
        assert len({t.id for t in weak} & set(result.removed_ids)) == 10

    @pytest.mark.asyncio
    async def test_stops_once_below_target(self, registry, store):
        quota = QuotaManager(store, registry, QuotaConfig(template_limit=30, warning_threshold=25,
                                                          cleanup_target=28))
        await _healthy(store, 25)
        await seed_templates(store, 5, usage_count=0, created_at=_old(10))
        result = await quota.enforce_limit(ACCOUNT)
        # 30 → 27 crosses below the target of 28
        assert len(result.removed_ids) == 3
        assert result.count_after == 27

    @pytest.mark.asyncio
    async def test_core_business_never_removed(self, quota, store):
        core = await seed_templates(store, 250, category=TemplateCategory.CORE_BUSINESS,
                                    usage_count=0, response_rate=0.0, created_at=_old(400))
        result = await quota.enforce_limit(ACCOUNT)
        assert result.removed_ids == []
        assert result.count_after == 250
        assert all([await store.get_template(t.id) for t in core])
        assert not (await quota.can_create(ACCOUNT)).allowed

    @pytest.mark.asyncio
    async def test_remote_delete_failure_is_recorded_not_blocking(self, quota, store, registry):
        registry.fail_delete = True
        await _healthy(store, 240)
        await seed_templates(store, 10, usage_count=0, created_at=_old(10), remote_id="r1")
        result = await quota.enforce_limit(ACCOUNT)
        assert len(result.removed_ids) == 10
        assert sorted(result.inconsistencies) == sorted(result.removed_ids)
        assert len(result.registry_errors) == 10
        assert all("left in registry" in err and "Template deletion failed" in err
                   for err in result.registry_errors)
        assert result.count_after == 240

    @pytest.mark.asyncio
    async def test_local_delete_failure_skips_template(self, quota, store):
        await _healthy(store, 245)
        await seed_templates(store, 5, usage_count=0, created_at=_old(10))
        real_delete = store.delete_template_record
        calls = []

        async def flaky_delete(template_id):
            calls.append(template_id)
            if len(calls) == 1:
                raise PersistenceError("row locked")
            return await real_delete(template_id)

        store.delete_template_record = flaky_delete
        result = await quota.enforce_limit(ACCOUNT)
        assert len(calls) == 5
        assert len(result.removed_ids) == 4
        assert calls[0] not in result.removed_ids

    @pytest.mark.asyncio
    async def test_count_error_reports_without_actions(self, registry):
        store = AsyncMock()
        store.count_quota_templates.side_effect = PersistenceError("db down")
        result = await QuotaManager(store, registry).enforce_limit(ACCOUNT)
        assert result.error == "db down"
        assert result.actions_taken == []

    @pytest.mark.asyncio
    async def test_never_above_limit_after_enforcement(self, quota, store):
        await _healthy(store, 100)
        await seed_templates(store, 150, usage_count=0, created_at=_old(10))
        result = await quota.enforce_limit(ACCOUNT)
        assert result.count_after <= 250
        assert result.count_after == 230


class TestPassFilters:
    def test_every_pass_excludes_core_business(self, quota):
        for cleanup_pass in CleanupPass:
            query = quota._pass_filter(cleanup_pass, ACCOUNT, utcnow())
            assert TemplateCategory.CORE_BUSINESS in query.exclude_categories
            assert query.status == TemplateStatus.APPROVED

    def test_stale_ai_filter(self, quota):
        query = quota._pass_filter(CleanupPass.STALE_AI, ACCOUNT, utcnow())
        assert query.categories == [TemplateCategory.AI_GENERATED]
        assert query.usage_below == 5
        assert query.order_by == "usage_count"
        assert query.limit == 15


# ──────────────────────────────────────────────────────────────
#  Analytics
# ──────────────────────────────────────────────────────────────

class TestTemplateAnalytics:
    @pytest.mark.asyncio
    async def test_breakdown(self, quota, store):
        await seed_templates(store, 2, usage_count=0)
        await seed_templates(store, 1, usage_count=5, response_rate=10.0)
        await seed_templates(store, 1, usage_count=60, response_rate=70.0,
                             category=TemplateCategory.AI_GENERATED, status=TemplateStatus.PENDING)

        analytics = await quota.get_template_analytics(ACCOUNT)

        assert analytics["total"] == 4
        assert analytics["by_status"] == {"approved": 3, "pending": 1}
        assert analytics["by_category"] == {"standard": 3, "ai_generated": 1}
        assert analytics["by_usage"] == {"unused": 2, "low_usage": 1, "medium_usage": 0, "high_usage": 1}
        assert analytics["by_performance"]["high_performing"] == 1
        assert analytics["by_performance"]["low_performing"] == 1
        assert analytics["by_performance"]["no_data"] == 2
        assert analytics["average_usage"] == pytest.approx(16.25)

    @pytest.mark.asyncio
    async def test_store_error_returns_none(self, registry):
        store = AsyncMock()
        store.list_templates.side_effect = PersistenceError("db down")
        assert await QuotaManager(store, registry).get_template_analytics(ACCOUNT) is None

