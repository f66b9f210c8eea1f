"""
Decision Engine — Decides what kind of follow-up a lead should get, and when.

For one lead and its recent conversation:
  1. Scores engagement (response ratio, timeline, recency, intent clarity)
  2. Extracts concerns / interests / questions from the lead's messages
  3. Detects urgency triggers
  4. Ranks follow-up options and picks one for the engagement level
  5. Schedules the next touch inside business hours

Pure and synchronous: no I/O, and missing lead fields count as unknown.
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config.settings import DecisionConfig
from models.schemas import (
    ConversationMessage, EngagementLevel, FollowUpOption, FollowUpTiming,
    FollowUpType, Lead, LeadContext, MessageSender, StrategyInput,
    TriggerPriority, UrgencyTrigger, utcnow,
)

logger = structlog.get_logger()

# ── Keyword buckets (matched case-insensitively from a word start) ──

TIMELINE_IMMEDIATE = ("asap", "urgent", "immediately", "1 month")
TIMELINE_SOON = ("soon", "3 month")
TIMELINE_MEDIUM = ("6 month",)

CONCERN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "family_discussion": ("family", "discuss"),
    "budget_concerns": ("budget", "afford", "expensive"),
    "timing_concerns": ("timing", "not ready"),
}

INTEREST_KEYWORDS: dict[str, tuple[str, ...]] = {
    "schools": ("school",),
    "transport": ("transport", "mrt"),
    "investment": ("investment", "rental"),
}

OPTION_PRIORITY = {
    "urgency_high": 90,
    "urgency_medium": 80,
    FollowUpType.LEAD_STATE: 75,
    FollowUpType.BEHAVIORAL: 65,
    FollowUpType.EDUCATIONAL: 60,
    FollowUpType.RELATIONSHIP: 40,
}


def _has_any(text: str, keywords: tuple[str, ...]) -> bool:
    """Keywords must start at a word boundary: '1 month' does not match '11 months'."""
    return any(re.search(r"\b" + re.escape(k), text) for k in keywords)


class DecisionEngine:
    """Turns a lead plus its conversation into a StrategyInput."""

    def __init__(self, config: DecisionConfig = None, timezone_name: str = "Asia/Singapore"):
        self.config = config or DecisionConfig()
        self.tz = ZoneInfo(timezone_name)

    # ══════════════════════════════════════════════════════
    #  PUBLIC API
    # ══════════════════════════════════════════════════════

    def decide(self, lead: Lead, conversation_history: list[ConversationMessage],
               now: Optional[datetime] = None) -> StrategyInput:
        now = now or utcnow()
        history = sorted(conversation_history or [], key=lambda m: m.created_at)

        score = self.score_engagement(lead, history, now)
        level = self.engagement_level(score)
        context = self.extract_context(lead, history)
        triggers = self.detect_triggers(lead, context)
        options = self.evaluate_options(lead, context, triggers)
        selected = self.select_option(options, level)
        timing = self.compute_timing(level, selected.type, now)

        logger.info("followup_decided",
                    lead_id=lead.id, score=score, level=level.value,
                    follow_up_type=selected.type.value, days=timing.days_from_now)

        return StrategyInput(
            lead_id=lead.id,
            engagement_score=score,
            engagement_level=level,
            follow_up_type=selected.type,
            priority=selected.priority,
            reasoning=selected.reasoning,
            options=options,
            triggers=triggers,
            context=context,
            timing=timing,
            frequency_days=self.config.cadence_days[level.value],
        )

    # ══════════════════════════════════════════════════════
    #  ENGAGEMENT
    # ══════════════════════════════════════════════════════

    def score_engagement(self, lead: Lead, history: list[ConversationMessage], now: datetime) -> int:
        score = 0

        recent = history[-self.config.history_window:]
        agent_msgs = sum(1 for m in recent if m.sender == MessageSender.AGENT)
        lead_msgs = sum(1 for m in recent if m.sender == MessageSender.LEAD)
        ratio = lead_msgs / agent_msgs if agent_msgs > 0 else 0.0
        if ratio > 0.7:
            score += 30
        elif ratio > 0.4:
            score += 20
        elif ratio > 0.1:
            score += 10

        timeline = (lead.timeline or "").lower()
        if _has_any(timeline, TIMELINE_IMMEDIATE):
            score += 25
        elif _has_any(timeline, TIMELINE_SOON):
            score += 15
        elif _has_any(timeline, TIMELINE_MEDIUM):
            score += 10

        last_inbound = next((m for m in reversed(history) if m.sender == MessageSender.LEAD), None)
        if last_inbound is not None:
            days = (now - last_inbound.created_at).total_seconds() / 86400
            if days < 1:
                score += 20
            elif days < 3:
                score += 15
            elif days < 7:
                score += 10
            elif days > 30:
                score -= 20

        if lead.budget and lead.location_preference and lead.property_type:
            score += 15

        return score

    @staticmethod
    def engagement_level(score: int) -> EngagementLevel:
        if score >= 60:
            return EngagementLevel.HOT
        if score >= 35:
            return EngagementLevel.WARM
        if score >= 15:
            return EngagementLevel.COLD
        return EngagementLevel.NURTURE

    # ══════════════════════════════════════════════════════
    #  CONTEXT & TRIGGERS
    # ══════════════════════════════════════════════════════

    def extract_context(self, lead: Lead, history: list[ConversationMessage]) -> LeadContext:
        context = LeadContext(
            current_state=lead.current_state.value,
            timeline=lead.timeline,
        )
        inbound = [m for m in history if m.sender == MessageSender.LEAD][-self.config.context_window:]
        for message in inbound:
            content = (message.content or "").lower()
            for concern, keywords in CONCERN_KEYWORDS.items():
                if _has_any(content, keywords) and concern not in context.concerns:
                    context.concerns.append(concern)
            for interest, keywords in INTEREST_KEYWORDS.items():
                if _has_any(content, keywords) and interest not in context.interests:
                    context.interests.append(interest)
            if "?" in content:
                context.questions.append(message.content)
        return context

    @staticmethod
    def detect_triggers(lead: Lead, context: LeadContext) -> list[UrgencyTrigger]:
        triggers: list[UrgencyTrigger] = []

        if _has_any((lead.timeline or "").lower(), TIMELINE_IMMEDIATE):
            triggers.append(UrgencyTrigger(
                type="timeline_urgent", priority=TriggerPriority.HIGH,
                message="Timeline approaching - needs immediate attention",
            ))
        if "family_discussion" in context.concerns:
            triggers.append(UrgencyTrigger(
                type="family_discussion_followup", priority=TriggerPriority.MEDIUM,
                message="Family discussion period likely ended",
            ))
        if "budget_concerns" in context.concerns:
            triggers.append(UrgencyTrigger(
                type="budget_assistance", priority=TriggerPriority.MEDIUM,
                message="Budget concerns need addressing",
            ))
        return triggers

    # ══════════════════════════════════════════════════════
    #  OPTIONS
    # ══════════════════════════════════════════════════════

    @staticmethod
    def evaluate_options(lead: Lead, context: LeadContext,
                         triggers: list[UrgencyTrigger]) -> list[FollowUpOption]:
        options: list[FollowUpOption] = []

        for trigger in triggers:
            key = "urgency_high" if trigger.priority == TriggerPriority.HIGH else "urgency_medium"
            options.append(FollowUpOption(
                type=FollowUpType.URGENCY,
                priority=OPTION_PRIORITY[key],
                content=trigger.model_dump(mode="json"),
                reasoning=trigger.message,
            ))

        if context.concerns:
            options.append(FollowUpOption(
                type=FollowUpType.LEAD_STATE,
                priority=OPTION_PRIORITY[FollowUpType.LEAD_STATE],
                content={"concerns": list(context.concerns)},
                reasoning="Lead has specific concerns to address",
            ))

        if context.interests:
            options.append(FollowUpOption(
                type=FollowUpType.BEHAVIORAL,
                priority=OPTION_PRIORITY[FollowUpType.BEHAVIORAL],
                content={"interests": list(context.interests)},
                reasoning="Lead showed specific interests",
            ))

        if lead.buyer_type == "first_time" or context.questions:
            options.append(FollowUpOption(
                type=FollowUpType.EDUCATIONAL,
                priority=OPTION_PRIORITY[FollowUpType.EDUCATIONAL],
                content={"buyer_type": lead.buyer_type, "questions": list(context.questions)},
                reasoning="Lead needs education or has questions",
            ))

        options.append(FollowUpOption(
            type=FollowUpType.RELATIONSHIP,
            priority=OPTION_PRIORITY[FollowUpType.RELATIONSHIP],
            content={"tone": "casual_checkin"},
            reasoning="General relationship maintenance",
        ))

        # stable sort keeps trigger order among equal priorities
        return sorted(options, key=lambda o: o.priority, reverse=True)

    @staticmethod
    def select_option(options: list[FollowUpOption], level: EngagementLevel) -> FollowUpOption:
        if not options:
            return FollowUpOption(
                type=FollowUpType.RELATIONSHIP,
                priority=OPTION_PRIORITY[FollowUpType.RELATIONSHIP],
                content={"tone": "casual_checkin"},
                reasoning="No specific triggers found",
            )

        if level == EngagementLevel.COLD:
            preferred = (FollowUpType.EDUCATIONAL,)
        elif level == EngagementLevel.HOT:
            preferred = (FollowUpType.URGENCY, FollowUpType.LEAD_STATE)
        else:
            preferred = ()

        for option in options:
            if option.type in preferred:
                return option
        return options[0]

    # ══════════════════════════════════════════════════════
    #  TIMING
    # ══════════════════════════════════════════════════════

    def compute_timing(self, level: EngagementLevel, follow_up_type: FollowUpType,
                       now: datetime) -> FollowUpTiming:
        days = self.config.cadence_days[level.value]
        if follow_up_type == FollowUpType.URGENCY:
            days = min(days, 1)

        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = (now + timedelta(days=days)).astimezone(self.tz)
        start, end = self.config.business_hour_start, self.config.business_hour_end
        if local.hour < start:
            local = datetime.combine(local.date(), dtime(start), tzinfo=self.tz)
        elif local.hour >= end:
            local = datetime.combine(local.date() + timedelta(days=1), dtime(start), tzinfo=self.tz)

        return FollowUpTiming(
            scheduled_time=local.astimezone(timezone.utc),
            days_from_now=days,
            reasoning=f"{level.value} lead, {follow_up_type.value} follow-up",
        )
