"""
Strategy Selector — Chooses how a follow-up message gets produced.

Tiers, best first:
  1. free_form          inside the 24h reply window, with a confident insight
  2. ai_template        generate, register and persist a fresh template
  3. existing_template  deterministic library lookup; cannot fail

select_strategy() picks the starting tier; execute() walks down the tiers
until one produces a MessageArtifact. Neither raises.
"""
from __future__ import annotations

import abc
import asyncio
import re
import structlog
from datetime import datetime, timedelta
from typing import Optional

from channels.base import TemplateRegistry
from config.settings import StrategyConfig
from core.errors import FollowUpError, QuotaExceededError
from core.generator import AIGenerator, extract_json
from core.quota import QuotaManager
from database.store_base import BaseFollowUpStore
from models.schemas import (
    ConversationMessage, FollowUpTask, Insight, Lead, MessageArtifact,
    MessageSender, StrategyDecision, StrategyInput, StrategyResult,
    StrategyType, Template, TemplateCategory, TemplateStatus, utcnow,
)
from templates.library import (
    TemplateLibrary, is_system_template, personalize, positional_body,
    stage_category, system_default, template_variables, GENERIC,
)

logger = structlog.get_logger()

MAX_TEMPLATE_CHARS = 1024

TEMPLATE_SYSTEM_PROMPT = (
    "You write WhatsApp follow-up templates for a real-estate agency. Return only valid JSON."
)


def can_send_free_form(conversation: list[ConversationMessage], now: datetime,
                       window_hours: int = 24) -> bool:
    """True when the last message came from the lead and the reply window is still open."""
    if not conversation:
        return False
    last = max(conversation, key=lambda m: m.created_at)
    return last.sender == MessageSender.LEAD and now - last.created_at < timedelta(hours=window_hours)


# ══════════════════════════════════════════════════════════════
#  INSIGHTS
# ══════════════════════════════════════════════════════════════

class InsightProvider(abc.ABC):
    """Finds something worth saying to a lead right now."""

    @abc.abstractmethod
    async def get_insight(self, lead: Lead, conversation: list[ConversationMessage],
                          decision: StrategyInput) -> Optional[Insight]:
        ...


class LLMInsightProvider(InsightProvider):
    """Asks the LLM for a reply grounded in the open conversation, with a confidence score."""

    def __init__(self, generator: AIGenerator, timeout: float = 10.0):
        self.generator = generator
        self.timeout = timeout

    def _prompt(self, lead: Lead, conversation: list[ConversationMessage], decision: StrategyInput) -> str:
        transcript = "\n".join(
            f"{m.sender.value}: {m.content}" for m in conversation[-10:]
        )
        return (
            "A property lead is waiting on a reply.\n\n"
            f"Lead: {lead.full_name or 'Unknown'} (state: {lead.current_state.value})\n"
            f"Follow-up type: {decision.follow_up_type.value}\n"
            f"Concerns: {', '.join(decision.context.concerns) or 'None'}\n"
            f"Interests: {', '.join(decision.context.interests) or 'None'}\n\n"
            f"Conversation:\n{transcript}\n\n"
            "Write a short, specific WhatsApp reply that moves the conversation forward. "
            'Return JSON: {"message": "...", "confidence": 0.0-1.0}'
        )

    async def get_insight(self, lead: Lead, conversation: list[ConversationMessage],
                          decision: StrategyInput) -> Optional[Insight]:
        try:
            raw = await self.generator.generate(self._prompt(lead, conversation, decision), timeout=self.timeout)
        except FollowUpError as e:
            logger.warning("insight_generation_failed", lead_id=lead.id, error=str(e))
            return None

        data = extract_json(raw)
        if not data or not str(data.get("message", "")).strip():
            return None
        try:
            confidence = float(data.get("confidence", 0))
        except (TypeError, ValueError):
            confidence = 0.0
        return Insight(message=str(data["message"]).strip(), confidence=confidence)


# ══════════════════════════════════════════════════════════════
#  SELECTOR
# ══════════════════════════════════════════════════════════════

class StrategySelector:

    def __init__(
        self,
        store: BaseFollowUpStore,
        quota: QuotaManager,
        generator: AIGenerator,
        registry: TemplateRegistry,
        library: TemplateLibrary,
        insight_provider: Optional[InsightProvider] = None,
        config: StrategyConfig = None,
        max_stages: int = 4,
    ):
        self.store = store
        self.quota = quota
        self.generator = generator
        self.registry = registry
        self.library = library
        self.insight_provider = insight_provider
        self.config = config or StrategyConfig()
        self.max_stages = max_stages

    # ── Selection ─────────────────────────────────────────

    async def select_strategy(self, decision: StrategyInput, lead: Lead,
                              conversation: list[ConversationMessage],
                              task: Optional[FollowUpTask] = None,
                              now: Optional[datetime] = None) -> StrategyResult:
        now = now or utcnow()
        try:
            chosen = await self._choose(decision, lead, conversation, now)
        except Exception as e:
            logger.error("strategy_selection_failed", lead_id=lead.id, error=str(e))
            chosen = StrategyDecision(
                type=StrategyType.EXISTING_TEMPLATE,
                reasoning="Emergency fallback due to strategy selection error",
                emergency=True,
            )

        logger.info("strategy_selected", lead_id=lead.id, strategy=chosen.type.value,
                    reasoning=chosen.reasoning)
        return StrategyResult(
            decision=chosen, strategy_input=decision, lead=lead,
            conversation=conversation, task=task,
        )

    async def _choose(self, decision: StrategyInput, lead: Lead,
                      conversation: list[ConversationMessage], now: datetime) -> StrategyDecision:
        if self.insight_provider and can_send_free_form(conversation, now, self.config.free_form_window_hours):
            insight = await self.insight_provider.get_insight(lead, conversation, decision)
            if insight and insight.confidence >= self.config.insight_confidence_min:
                return StrategyDecision(
                    type=StrategyType.FREE_FORM,
                    reasoning="Within reply window with a confident insight",
                    confidence=insight.confidence,
                    fallback_chain=[StrategyType.AI_TEMPLATE, StrategyType.EXISTING_TEMPLATE],
                    insight=insight,
                )

        check = await self.quota.can_create(lead.account_id)
        if not check.allowed:
            logger.warning("template_quota_denied", account_id=lead.account_id,
                           count=check.current_count, limit=check.limit)
            await self._enforce_quietly(lead.account_id)
            return StrategyDecision(
                type=StrategyType.EXISTING_TEMPLATE,
                reasoning="Template quota full; using existing templates",
                confidence=0.6,
            )

        return StrategyDecision(
            type=StrategyType.AI_TEMPLATE,
            reasoning="AI-first strategy",
            confidence=0.9,
            fallback_chain=[StrategyType.EXISTING_TEMPLATE],
        )

    async def _enforce_quietly(self, account_id: str) -> None:
        try:
            await self.quota.enforce_limit(account_id)
        except Exception as e:
            logger.error("eager_quota_enforcement_failed", account_id=account_id, error=str(e))

    # ── Execution ─────────────────────────────────────────

    async def execute(self, result: StrategyResult) -> MessageArtifact:
        artifact: Optional[MessageArtifact] = None
        try:
            if result.type == StrategyType.FREE_FORM and result.decision.insight:
                artifact = MessageArtifact(
                    kind=StrategyType.FREE_FORM,
                    content=result.decision.insight.message,
                    language_code=self.config.language_code,
                    strategy=result.decision,
                )
            elif result.type == StrategyType.AI_TEMPLATE:
                artifact = await self._execute_ai_template(result)
        except Exception as e:
            logger.error("strategy_execution_failed", lead_id=result.lead.id,
                         strategy=result.type.value, error=str(e))

        if artifact is not None:
            return artifact
        return await self._execute_existing(result, fell_back=result.type != StrategyType.EXISTING_TEMPLATE)

    def _template_prompt(self, result: StrategyResult) -> str:
        decision = result.strategy_input
        lead = result.lead
        return (
            "Create a WhatsApp template for a property follow-up.\n\n"
            "CONTEXT:\n"
            f"- Lead state: {lead.current_state.value}\n"
            f"- Follow-up type: {decision.follow_up_type.value}\n"
            f"- Engagement: {decision.engagement_level.value}\n"
            f"- Concerns: {', '.join(decision.context.concerns) or 'None'}\n"
            f"- Interests: {', '.join(decision.context.interests) or 'None'}\n"
            f"- Reason: {decision.reasoning}\n\n"
            "REQUIREMENTS:\n"
            "1. Only these placeholders: {{name}}, {{budget}}, {{location}}, {{property_type}}, {{timeline}}\n"
            "2. Mobile-friendly, professional but casual, at most 150 words\n"
            "3. End with an engaging question\n\n"
            'Return JSON: {"content": "template text"}'
        )

    def _parse_template(self, raw: str) -> str:
        data = extract_json(raw)
        content = str((data or {}).get("content", "")).strip()
        if not content:
            raise FollowUpError("Invalid template structure generated", retryable=True)
        if len(content) > MAX_TEMPLATE_CHARS:
            raise FollowUpError("Generated template too long", retryable=True)
        return content

    async def _execute_ai_template(self, result: StrategyResult) -> Optional[MessageArtifact]:
        lead = result.lead
        timeout = self.config.generation_timeout_s
        attempts = 1 + self.config.max_generation_retries
        prompt = self._template_prompt(result)

        for attempt in range(1, attempts + 1):
            try:
                raw = await asyncio.wait_for(
                    self.generator.generate(prompt, timeout=timeout, system=TEMPLATE_SYSTEM_PROMPT),
                    timeout=timeout,
                )
                content = self._parse_template(raw)
                template = await self._register_template(result, content)
            except QuotaExceededError as e:
                logger.info("ai_template_quota_exceeded", account_id=lead.account_id, error=str(e))
                return None
            except (asyncio.TimeoutError, FollowUpError) as e:
                logger.warning("ai_template_attempt_failed", lead_id=lead.id, attempt=attempt,
                               error=str(e) or type(e).__name__)
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_delay_s)
                continue

            if template.status != TemplateStatus.APPROVED:
                # Unapproved templates cannot be sent yet
                logger.info("ai_template_pending_approval", lead_id=lead.id, template_id=template.id,
                            name=template.name, status=template.status.value)
                return None

            logger.info("ai_template_created", lead_id=lead.id, template_id=template.id,
                        name=template.name, attempt=attempt)
            return MessageArtifact(
                kind=StrategyType.AI_TEMPLATE,
                content=personalize(content, lead),
                template_id=template.id,
                template_name=template.name,
                remote_template_id=template.remote_id,
                language_code=self.config.language_code,
                variables=template_variables(content, lead),
                strategy=result.decision,
                generation_attempts=attempt,
            )

        logger.warning("ai_template_exhausted", lead_id=lead.id, attempts=attempts)
        return None

    async def _register_template(self, result: StrategyResult, content: str) -> Template:
        lead = result.lead
        task = result.task
        state = lead.current_state.value
        name = re.sub(r"[^a-z0-9_]", "_", f"ai_{state}_{int(utcnow().timestamp() * 1000)}".lower())
        category = stage_category(task.sequence_stage, task.is_final_attempt, self.max_stages) if task else GENERIC
        body, _ = positional_body(content)

        async with self.quota.reserve(lead.account_id):
            remote = await asyncio.wait_for(
                self.registry.create_remote_template(lead.account_id, name, body, self.config.language_code),
                timeout=self.config.generation_timeout_s,
            )
            template = Template(
                account_id=lead.account_id,
                name=name,
                category=TemplateCategory.AI_GENERATED,
                content=content,
                lead_state=state,
                stage_category=category,
                remote_id=remote.id,
                status=remote.status,
            )
            await self.store.create_template_record(template)
        return template

    async def _execute_existing(self, result: StrategyResult, fell_back: bool) -> MessageArtifact:
        lead = result.lead
        task = result.task
        stage = task.sequence_stage if task else 1
        is_final = task.is_final_attempt if task else False
        try:
            template = await self.library.resolve(lead.account_id, lead.current_state.value, stage, is_final)
        except Exception as e:
            logger.error("template_library_failed", lead_id=lead.id, error=str(e))
            template = system_default(lead.account_id, stage_category(stage, is_final, self.max_stages))

        system = is_system_template(template)
        return MessageArtifact(
            kind=StrategyType.EXISTING_TEMPLATE,
            content=personalize(template.content, lead),
            template_id=None if system else template.id,
            template_name=template.name,
            remote_template_id=template.remote_id,
            language_code=self.config.language_code,
            variables=template_variables(template.content, lead),
            strategy=result.decision,
            fell_back=fell_back,
        )
