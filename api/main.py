"""
FastAPI Application — operations API for the follow-up scheduler.

Provides:
- Health endpoint backed by the scheduler's health check
- Scheduler status and a manual single-pass trigger
- Per-account template quota, enforcement and analytics

The scheduler runs inside the lifespan; pass a prebuilt Services
container to create_app() to serve around existing components.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from config.settings import get_settings
from core.bootstrap import Services, build_services
from models.schemas import HealthStatus

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(services: Optional[Services] = None, start_scheduler: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or await build_services(get_settings())
        if start_scheduler:
            await app.state.services.scheduler.start()
        logger.info("followup_service_started", app_name=app.state.services.settings.app_name)
        yield
        if owned:
            await app.state.services.close()
        elif app.state.services.scheduler.is_running:
            await app.state.services.scheduler.stop()
        logger.info("followup_service_stopped")

    app = FastAPI(
        title="Follow-up Orchestrator API",
        description="Lead follow-up scheduling, strategy and template quota",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH & SCHEDULER
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(services: Services = Depends(get_services)) -> dict[str, Any]:
        report = await services.scheduler.check_health()
        body = report.model_dump(mode="json")
        body["scheduler_running"] = services.scheduler.is_running
        if report.status == HealthStatus.UNHEALTHY:
            raise HTTPException(503, body)
        return body

    @app.get("/api/v1/scheduler/status")
    async def scheduler_status(services: Services = Depends(get_services)) -> dict[str, Any]:
        return services.scheduler.get_status()

    @app.post("/api/v1/scheduler/run-once")
    async def scheduler_run_once(services: Services = Depends(get_services)) -> dict[str, Any]:
        stats = await services.scheduler.run_once()
        if stats.skipped_cycle:
            raise HTTPException(409, "Main processor is already running")
        return stats.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  TEMPLATE QUOTA
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/accounts/{account_id}/templates/quota")
    async def template_quota(account_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
        check = await services.quota.can_create(account_id)
        body = check.model_dump(mode="json")
        body["reserved_slots"] = services.quota.reserved(account_id)
        return body

    @app.post("/api/v1/accounts/{account_id}/templates/enforce")
    async def template_enforce(account_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
        result = await services.quota.enforce_limit(account_id)
        if result.error:
            raise HTTPException(503, f"Template count unavailable: {result.error}")
        return result.model_dump(mode="json")

    @app.get("/api/v1/accounts/{account_id}/templates/analytics")
    async def template_analytics(account_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
        analytics = await services.quota.get_template_analytics(account_id)
        if analytics is None:
            raise HTTPException(503, "Template analytics unavailable")
        return analytics


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
