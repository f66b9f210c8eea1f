"""
Service container — wires every component from Settings.

    services = await build_services(get_settings())
    await services.scheduler.start()
    ...
    await services.close()

Components receive their collaborators here instead of reaching for
module-level singletons, so tests can build the same graph around fakes.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from channels.base import TemplateRegistry, Transport
from channels.memory import InMemoryTemplateRegistry, InMemoryTransport
from config.settings import Settings, get_settings
from core.analytics import FollowUpAnalytics
from core.decision import DecisionEngine
from core.generator import AIGenerator, LLMGenerator
from core.quota import QuotaManager
from core.scheduler import FollowUpScheduler
from core.strategy import InsightProvider, LLMInsightProvider, StrategySelector
from database.store_base import BaseFollowUpStore
from database.store_factory import create_store
from templates.library import TemplateLibrary

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    store: BaseFollowUpStore
    transport: Transport
    registry: TemplateRegistry
    generator: AIGenerator
    quota: QuotaManager
    library: TemplateLibrary
    selector: StrategySelector
    engine: DecisionEngine
    analytics: FollowUpAnalytics
    scheduler: FollowUpScheduler

    async def close(self) -> None:
        if self.scheduler.is_running:
            await self.scheduler.stop()
        for component in (self.transport, self.registry, self.generator):
            try:
                await component.close()
            except Exception as e:
                logger.warning("component_close_failed", component=type(component).__name__, error=str(e))
        await self.store.close()
        logger.info("services_closed")


def _build_channels(settings: Settings) -> tuple[Transport, TemplateRegistry]:
    wa = settings.whatsapp
    if wa.access_token:
        from channels.whatsapp_adapter import WhatsAppTemplateRegistry, WhatsAppTransport
        logger.info("whatsapp_channel_configured", phone_number_id=wa.phone_number_id)
        return WhatsAppTransport(wa), WhatsAppTemplateRegistry(wa)

    logger.warning("whatsapp_not_configured", fallback="memory")
    return InMemoryTransport(), InMemoryTemplateRegistry()


def assemble_services(
    settings: Settings,
    store: BaseFollowUpStore,
    transport: Transport,
    registry: TemplateRegistry,
    generator: AIGenerator,
    insight_provider: Optional[InsightProvider] = None,
) -> Services:
    """Wire the component graph around already-built collaborators."""
    max_stages = settings.scheduler.max_sequence_stages

    quota = QuotaManager(store, registry, settings.quota)
    library = TemplateLibrary(store, max_stages=max_stages)
    if insight_provider is None:
        insight_provider = LLMInsightProvider(generator, timeout=settings.strategy.generation_timeout_s)
    selector = StrategySelector(
        store=store,
        quota=quota,
        generator=generator,
        registry=registry,
        library=library,
        insight_provider=insight_provider,
        config=settings.strategy,
        max_stages=max_stages,
    )
    engine = DecisionEngine(settings.decision, timezone_name=settings.timezone)
    analytics = FollowUpAnalytics(store, timezone_name=settings.timezone)
    scheduler = FollowUpScheduler(
        store=store,
        engine=engine,
        selector=selector,
        transport=transport,
        analytics=analytics,
        config=settings.scheduler,
        send_timeout_s=settings.whatsapp.send_timeout_s,
        history_window=settings.decision.history_window,
    )
    return Services(
        settings=settings, store=store, transport=transport, registry=registry,
        generator=generator, quota=quota, library=library, selector=selector,
        engine=engine, analytics=analytics, scheduler=scheduler,
    )


async def build_services(settings: Settings = None) -> Services:
    settings = settings or get_settings()
    store = await create_store(settings.database)
    transport, registry = _build_channels(settings)
    generator = LLMGenerator(settings.llm)
    services = assemble_services(settings, store, transport, registry, generator)
    logger.info("services_built", store=type(store).__name__, transport=type(transport).__name__,
                llm_provider=settings.llm.provider)
    return services
