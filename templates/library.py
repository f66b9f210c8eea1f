"""
Template Library — Resolves the static template for a follow-up.

Resolution order:
  1. Approved template for (lead state, stage category), best response
     rate first, lowest usage on ties
  2. Same stage category under the "default" lead state
  3. Built-in system default for the stage category

Resolution never fails: store errors fall through to step 3.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from database.store_base import BaseFollowUpStore
from models.schemas import (
    Lead, Template, TemplateCategory, TemplateFilter, TemplateStatus,
)

logger = structlog.get_logger()

STATE_BASED = "state_based"
GENERIC = "generic"
FINAL = "final"

SYSTEM_TEMPLATE_PREFIX = "system:"

SYSTEM_DEFAULTS: dict[str, str] = {
    STATE_BASED: "Hey {{name}}, how are you doing? Just checking in regarding your property search.",
    GENERIC: "Hi {{name}}! Hope you're well. Just wanted to see how things are going with your property plans.",
    FINAL: (
        "Hey {{name}}, this will be my last check-in regarding your property search. "
        "If you need any help in the future, feel free to reach out!"
    ),
}

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def stage_category(sequence_stage: int, is_final_attempt: bool = False, max_stages: int = 4) -> str:
    """Map a sequence stage to its template category."""
    if is_final_attempt or sequence_stage >= max_stages:
        return FINAL
    if sequence_stage <= 1:
        return STATE_BASED
    return GENERIC


def is_system_template(template: Template) -> bool:
    return template.id.startswith(SYSTEM_TEMPLATE_PREFIX)


def system_default(account_id: str, category: str) -> Template:
    content = SYSTEM_DEFAULTS.get(category, SYSTEM_DEFAULTS[GENERIC])
    return Template(
        id=f"{SYSTEM_TEMPLATE_PREFIX}{category}",
        account_id=account_id,
        name=f"system_default_{category}",
        category=TemplateCategory.CORE_BUSINESS,
        content=content,
        stage_category=category,
    )


def _lead_values(lead: Lead) -> dict[str, str]:
    full_name = (lead.full_name or "").strip()
    return {
        "name": full_name or "there",
        "first_name": full_name.split(" ")[0] if full_name else "there",
        "budget": lead.budget or "your budget",
        "location": lead.location_preference or "your preferred area",
        "property_type": lead.property_type or "property",
        "timeline": lead.timeline or "your timeline",
    }


def _tidy(text: str) -> str:
    return re.sub(r"[ \t]{2,}", " ", text).strip()


def personalize(content: str, lead: Lead) -> str:
    """Fill {{placeholders}} from lead fields; unknown placeholders are dropped."""
    values = _lead_values(lead)
    return _tidy(_PLACEHOLDER.sub(lambda m: values.get(m.group(1), ""), content))


def positional_body(content: str) -> tuple[str, list[str]]:
    """
    Rewrite named placeholders as WhatsApp positional ones.

    "Hi {{name}}, about {{budget}}" → ("Hi {{1}}, about {{2}}", ["name", "budget"])
    Unknown placeholders are dropped; repeated names reuse their position.
    """
    known = set(_lead_values(Lead(account_id="")))
    names: list[str] = []

    def _swap(match: re.Match) -> str:
        name = match.group(1)
        if name not in known:
            return ""
        if name not in names:
            names.append(name)
        return "{{%d}}" % (names.index(name) + 1)

    return _tidy(_PLACEHOLDER.sub(_swap, content)), names


def template_variables(content: str, lead: Lead) -> list[str]:
    """Body parameter values, in positional order, for a template send."""
    values = _lead_values(lead)
    return [values[name] for name in positional_body(content)[1]]


class TemplateLibrary:
    """Deterministic tier-3 template lookup over the store."""

    def __init__(self, store: BaseFollowUpStore, max_stages: int = 4):
        self.store = store
        self.max_stages = max_stages

    async def resolve(self, account_id: str, lead_state: str, sequence_stage: int,
                      is_final_attempt: bool = False) -> Template:
        category = stage_category(sequence_stage, is_final_attempt, self.max_stages)
        try:
            for state in (lead_state, "default"):
                found = await self._best(account_id, state, category)
                if found:
                    return found
        except Exception as e:
            logger.warning("template_lookup_failed",
                           account_id=account_id, lead_state=lead_state, error=str(e))

        logger.info("system_template_used", account_id=account_id, category=category)
        return system_default(account_id, category)

    async def _best(self, account_id: str, lead_state: str, category: str) -> Optional[Template]:
        candidates = await self.store.list_templates(TemplateFilter(
            account_id=account_id,
            status=TemplateStatus.APPROVED,
            lead_state=lead_state,
            stage_category=category,
        ))
        if not candidates:
            return None
        return max(candidates, key=lambda t: (t.response_rate, -t.usage_count))
