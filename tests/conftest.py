"""Shared test fixtures for the follow-up core."""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from channels.memory import InMemoryTemplateRegistry, InMemoryTransport
from config.settings import Settings, StrategyConfig
from core.bootstrap import Services, assemble_services
from core.generator import AIGenerator
from core.strategy import InsightProvider
from database.store_memory import InMemoryFollowUpStore
from models.schemas import (
    ConversationMessage, FollowUpTask, Insight, Lead, LeadState,
    MessageSender, Template,
)

ACCOUNT = "acct_1"

# 12:00 in Asia/Singapore, so +1/+2 day schedules stay inside business hours
NOON_SGT = datetime(2026, 3, 10, 4, 0, tzinfo=timezone.utc)


class FakeGenerator(AIGenerator):
    """Scripted AIGenerator: queued replies, a fixed error, or a call that never returns."""

    def __init__(self, responses: Optional[list[str]] = None, error: Optional[Exception] = None,
                 hang: bool = False):
        self.responses = list(responses or [])
        self.error = error
        self.hang = hang
        self.calls: list[str] = []
        self.cancelled = 0

    async def generate(self, prompt: str, timeout: float, system: str = "") -> str:
        self.calls.append(prompt)
        if self.hang:
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if self.error:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return json.dumps({"content": "Hi {{name}}, still keen on places around {{location}}?"})


class StaticInsightProvider(InsightProvider):
    def __init__(self, insight: Optional[Insight] = None):
        self.insight = insight
        self.calls = 0

    async def get_insight(self, lead, conversation, decision):
        self.calls += 1
        return self.insight


def make_lead(**overrides) -> Lead:
    data = dict(
        account_id=ACCOUNT,
        full_name="Mei Ling Tan",
        phone_number="+65 9123 4567",
        current_state=LeadState.EXPLORING,
    )
    data.update(overrides)
    return Lead(**data)


def make_message(lead_id: str, sender: MessageSender, content: str, at: datetime) -> ConversationMessage:
    return ConversationMessage(lead_id=lead_id, sender=sender, content=content, created_at=at)


def make_template(**overrides) -> Template:
    data = dict(account_id=ACCOUNT, name="tpl", content="Hi {{name}}!")
    data.update(overrides)
    return Template(**data)


def make_task(lead: Lead, **overrides) -> FollowUpTask:
    data = dict(lead_id=lead.id, account_id=lead.account_id,
                scheduled_time=NOON_SGT - timedelta(minutes=5))
    data.update(overrides)
    return FollowUpTask(**data)


async def seed_templates(store, count: int, **overrides) -> list[Template]:
    created = []
    for i in range(count):
        fields = dict(name=f"tpl_{len(created)}_{i}")
        fields.update(overrides)
        template = make_template(**fields)
        await store.create_template_record(template)
        created.append(template)
    return created


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.strategy = StrategyConfig(retry_delay_s=0.0, generation_timeout_s=0.2)
    return s


@pytest.fixture
def store() -> InMemoryFollowUpStore:
    return InMemoryFollowUpStore()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def registry() -> InMemoryTemplateRegistry:
    return InMemoryTemplateRegistry()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def insight_provider() -> StaticInsightProvider:
    return StaticInsightProvider()


@pytest.fixture
def services(settings, store, transport, registry, generator, insight_provider) -> Services:
    return assemble_services(settings, store, transport, registry, generator, insight_provider)
