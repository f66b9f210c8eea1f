"""Tests for data models: task transitions, lead eligibility, template filters."""
from datetime import timedelta

import pytest

from conftest import make_lead, make_task, make_template
from models.schemas import (
    CycleStats, LeadState, TaskStatus, TemplateCategory, TemplateFilter, TemplateStatus, utcnow,
)


class TestTaskTransitions:
    @pytest.mark.parametrize("status", [TaskStatus.SENT, TaskStatus.FAILED, TaskStatus.DEAD])
    def test_pending_can_move_forward(self, status):
        assert make_task(make_lead()).can_transition(status)

    def test_failed_can_retry_or_die(self):
        task = make_task(make_lead(), status=TaskStatus.FAILED)
        assert task.can_transition(TaskStatus.FAILED)
        assert task.can_transition(TaskStatus.SENT)
        assert task.can_transition(TaskStatus.DEAD)
        assert not task.can_transition(TaskStatus.PENDING)

    @pytest.mark.parametrize("terminal", [TaskStatus.SENT, TaskStatus.DEAD])
    def test_terminal_is_immutable(self, terminal):
        task = make_task(make_lead(), status=terminal)
        assert task.is_terminal
        for status in TaskStatus:
            assert task.can_transition(status) == (status == terminal)


class TestLead:
    @pytest.mark.parametrize("state", [
        LeadState.BOOKED, LeadState.CONVERTED, LeadState.OPTED_OUT, LeadState.DEAD,
    ])
    def test_closed_states(self, state):
        assert make_lead(current_state=state).is_closed

    def test_open_lead(self):
        assert not make_lead(current_state=LeadState.NEGOTIATING).is_closed

    def test_blocked_lead_is_closed(self):
        assert make_lead(follow_up_eligible=False).is_closed


class TestTemplateFilter:
    def test_empty_filter_matches_everything(self):
        assert TemplateFilter().matches(make_template())

    def test_bounds_are_exclusive(self):
        template = make_template(usage_count=5, response_rate=20.0)
        assert not TemplateFilter(usage_below=5).matches(template)
        assert TemplateFilter(usage_below=6).matches(template)
        assert not TemplateFilter(usage_above=5).matches(template)
        assert not TemplateFilter(response_rate_below=20.0).matches(template)

    def test_created_before(self):
        template = make_template(created_at=utcnow() - timedelta(days=10))
        assert TemplateFilter(created_before=utcnow() - timedelta(days=7)).matches(template)
        assert not TemplateFilter(created_before=utcnow() - timedelta(days=11)).matches(template)

    def test_categories(self):
        core = make_template(category=TemplateCategory.CORE_BUSINESS)
        assert not TemplateFilter(exclude_categories=[TemplateCategory.CORE_BUSINESS]).matches(core)
        assert not TemplateFilter(categories=[TemplateCategory.AI_GENERATED]).matches(core)
        assert TemplateFilter(categories=[TemplateCategory.CORE_BUSINESS]).matches(core)

    def test_status_and_state(self):
        template = make_template(status=TemplateStatus.PENDING, lead_state="qualified")
        assert not TemplateFilter(status=TemplateStatus.APPROVED).matches(template)
        assert TemplateFilter(lead_state="qualified", stage_category="generic").matches(template)


class TestCycleStats:
    def test_failure_rate(self):
        assert CycleStats().failure_rate == 0.0
        assert CycleStats(processed=9, failed=1, skipped=5).failure_rate == pytest.approx(0.1)

    def test_dead_tasks_count_as_failures(self):
        assert CycleStats(dead=5).failure_rate == 1.0
        assert CycleStats(processed=6, failed=2, dead=2).failure_rate == pytest.approx(0.4)
