"""
Configuration loader for the follow-up orchestration service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "openai"                          # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    temperature: float = 0.6
    max_tokens: int = 600
    api_key: str = ""


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./followups.db"     # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"             # "sql" | "memory"
    echo: bool = False


@dataclass
class WhatsAppConfig:
    api_base: str = "https://graph.facebook.com/v19.0"
    phone_number_id: str = ""
    waba_id: str = ""
    access_token: str = ""
    language_code: str = "en"
    rate_per_second: float = 20.0
    send_timeout_s: float = 30.0


@dataclass
class DecisionConfig:
    history_window: int = 10
    context_window: int = 5
    business_hour_start: int = 9
    business_hour_end: int = 21
    cadence_days: dict[str, int] = field(default_factory=lambda: {
        "hot": 2, "warm": 7, "cold": 14, "nurture": 30,
    })


@dataclass
class QuotaConfig:
    template_limit: int = 250
    warning_threshold: int = 200
    cleanup_target: int = 180
    unused_grace_days: int = 7
    unused_batch: int = 20
    stale_ai_age_days: int = 90
    stale_ai_max_usage: int = 5
    stale_ai_batch: int = 15
    low_perf_max_response_rate: float = 20.0
    low_perf_min_usage: int = 10
    low_perf_batch: int = 10


@dataclass
class StrategyConfig:
    free_form_window_hours: int = 24
    insight_confidence_min: float = 0.75
    generation_timeout_s: float = 10.0
    max_generation_retries: int = 2
    retry_delay_s: float = 1.0
    language_code: str = "en"


@dataclass
class SchedulerConfig:
    main_interval_s: int = 300
    dead_lead_interval_s: int = 86400
    analytics_interval_s: int = 3600
    health_interval_s: int = 900
    template_performance_interval_s: int = 86400
    max_retries: int = 3
    retry_delay_s: int = 300                  # base backoff before the first retry
    backoff_multiplier: float = 2.0
    max_processing_time_s: int = 300
    max_failure_rate: float = 0.1
    max_queue_size: int = 1000
    error_threshold: int = 10
    error_window_s: int = 3600
    task_concurrency: int = 5
    max_sequence_stages: int = 4
    dead_lead_after_days: int = 7
    tracking_retention_days: int = 180
    template_performance_window_days: int = 30


@dataclass
class Settings:
    app_name: str = "FollowUpOrchestrator"
    debug: bool = False
    timezone: str = "Asia/Singapore"
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values.

    Unset variables resolve to an empty string so that credentials left
    unconfigured read as missing rather than as the literal placeholder.
    """
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _merge_section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FOLLOWUP_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "llm" in raw:
            settings.llm = _merge_section(LLMConfig, raw["llm"])
        if "database" in raw:
            database = {k: v for k, v in (raw["database"] or {}).items() if v not in ("", None)}
            settings.database = _merge_section(DatabaseConfig, database)
        if "whatsapp" in raw:
            settings.whatsapp = _merge_section(WhatsAppConfig, raw["whatsapp"])
        if "decision" in raw:
            decision = dict(raw["decision"] or {})
            cadence = {**DecisionConfig().cadence_days, **decision.pop("cadence_days", {})}
            settings.decision = _merge_section(DecisionConfig, {**decision, "cadence_days": cadence})
        if "quota" in raw:
            settings.quota = _merge_section(QuotaConfig, raw["quota"])
        if "strategy" in raw:
            settings.strategy = _merge_section(StrategyConfig, raw["strategy"])
        if "scheduler" in raw:
            settings.scheduler = _merge_section(SchedulerConfig, raw["scheduler"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
