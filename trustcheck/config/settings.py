from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("trustcheck_config.json")

_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_CONFIG: dict[str, Any] = {
    "env": "development",
    "port": 5001,
    "database_path": "trustcheck.db",
    "uploads_dir": "uploads",
    "admin_key": "dev-admin-key",
    "trust_enabled": True,
    "queue_mode": "local",
    "redis_url": "redis://127.0.0.1:6379/0",
    "queue_name": "trustcheck.factcheck",
    "worker_inline": True,
    "rules_enabled": True,
    "heuristics_enabled": True,
    "rules_file": "facts.json",
    "rules_refresh_seconds": 30,
    "rules_first": True,
    "no_result_if_skipped": False,
    "ai_enabled": False,
    "ai_force": False,
    "ai_demo_only": False,
    "ai_trigger_tag": "#verify",
    "ai_hourly_budget": 20,
    "ai_min_interval_ms": 4000,
    "ai_images_enabled": False,
    "ai_max_image_bytes": 1_500_000,
    "gemini_api_key": "",
    "gemini_model": "gemini-2.5-flash",
    "prior_alpha": 8.0,
    "prior_beta": 8.0,
    "maturity_min": 10,
    "trust_page_snapshots_enabled": False,
    "recheck_enabled": False,
    "recheck_interval_minutes": 60,
    "recheck_age_hours": 24.0,
    "recheck_batch_size": 50,
    "only_once": True,
    "factcheck_on_create": False,
    "factcheck_on_create_tag_only": True,
    "autotrigger_reacts": 2,
    "autotrigger_unique_users": 2,
    "autotrigger_cooldown_minutes": 60,
    "retention_interval_minutes": 5,
    "base_ttl_hours": 24,
    "t1_reactions": 5,
    "t1_comments": 3,
    "t1_days": 7,
    "t2_reactions": 8,
    "t2_comments": 5,
    "purge_expired": True,
}

# setting name -> (environment variable, parser)
ENV_VARS: dict[str, tuple[str, str]] = {
    "env": ("APP_ENV", "str"),
    "port": ("PORT", "int"),
    "database_path": ("DATABASE_PATH", "str"),
    "uploads_dir": ("UPLOADS_DIR", "str"),
    "admin_key": ("ADMIN_KEY", "str"),
    "trust_enabled": ("TRUST_ENABLED", "bool"),
    "queue_mode": ("TRUST_QUEUE_MODE", "str"),
    "redis_url": ("REDIS_URL", "str"),
    "queue_name": ("TRUST_QUEUE_NAME", "str"),
    "worker_inline": ("TRUST_WORKER_INLINE", "bool"),
    "rules_enabled": ("TRUST_RULES_ENABLED", "bool"),
    "heuristics_enabled": ("TRUST_HEURISTICS_ENABLED", "bool"),
    "rules_file": ("TRUST_RULES_FILE", "str"),
    "rules_refresh_seconds": ("TRUST_RULES_REFRESH_SECONDS", "int"),
    "rules_first": ("TRUST_RULES_FIRST", "bool"),
    "no_result_if_skipped": ("TRUST_NO_RESULT_IF_SKIPPED", "bool"),
    "ai_enabled": ("TRUST_GEMINI_ENABLED", "bool"),
    "ai_force": ("TRUST_GEMINI_FORCE", "bool"),
    "ai_demo_only": ("TRUST_GEMINI_DEMO_ONLY", "bool"),
    "ai_trigger_tag": ("TRUST_GEMINI_TRIGGER_TAG", "str"),
    "ai_hourly_budget": ("TRUST_GEMINI_HOURLY_BUDGET", "int"),
    "ai_min_interval_ms": ("TRUST_GEMINI_MIN_INTERVAL_MS", "int"),
    "ai_images_enabled": ("TRUST_GEMINI_IMAGES_ENABLED", "bool"),
    "ai_max_image_bytes": ("TRUST_GEMINI_MAX_IMAGE_BYTES", "int"),
    "gemini_api_key": ("GEMINI_API_KEY", "str"),
    "gemini_model": ("GEMINI_MODEL", "str"),
    "prior_alpha": ("TRUST_PRIOR_ALPHA", "float"),
    "prior_beta": ("TRUST_PRIOR_BETA", "float"),
    "maturity_min": ("TRUST_MATURITY_MIN", "int"),
    "trust_page_snapshots_enabled": ("TRUST_PAGE_SNAPSHOTS", "bool"),
    "recheck_enabled": ("TRUST_RECHECK_ENABLED", "bool"),
    "recheck_interval_minutes": ("TRUST_RECHECK_INTERVAL_MINUTES", "int"),
    "recheck_age_hours": ("TRUST_RECHECK_AGE_HOURS", "float"),
    "recheck_batch_size": ("TRUST_RECHECK_BATCH", "int"),
    "only_once": ("TRUST_FACTCHECK_ONLY_ONCE", "bool"),
    "factcheck_on_create": ("TRUST_FACTCHECK_ON_CREATE", "bool"),
    "factcheck_on_create_tag_only": ("TRUST_FACTCHECK_ON_CREATE_TAG_ONLY", "bool"),
    "autotrigger_reacts": ("TRUST_AUTOTRIGGER_REACTS", "int"),
    "autotrigger_unique_users": ("TRUST_AUTOTRIGGER_UNIQUE_USERS", "int"),
    "autotrigger_cooldown_minutes": ("TRUST_AUTOTRIGGER_COOLDOWN_MINUTES", "int"),
    "retention_interval_minutes": ("POST_RETENTION_INTERVAL_MIN", "int"),
    "base_ttl_hours": ("POST_BASE_TTL_HOURS", "int"),
    "t1_reactions": ("POST_T1_REACTIONS", "int"),
    "t1_comments": ("POST_T1_COMMENTS", "int"),
    "t1_days": ("POST_T1_DAYS", "int"),
    "t2_reactions": ("POST_T2_REACTIONS", "int"),
    "t2_comments": ("POST_T2_COMMENTS", "int"),
    "purge_expired": ("POST_PURGE_EXPIRED", "bool"),
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUTHY


_PARSERS: dict[str, Callable[[str], Any]] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": _parse_bool,
}


@dataclass
class Settings:
    """Runtime configuration for the fact-check pipeline and its workers."""

    env: str = "development"
    port: int = 5001
    database_path: str = "trustcheck.db"
    uploads_dir: str = "uploads"
    admin_key: str = "dev-admin-key"

    trust_enabled: bool = True
    queue_mode: str = "local"
    redis_url: str = "redis://127.0.0.1:6379/0"
    queue_name: str = "trustcheck.factcheck"
    worker_inline: bool = True

    rules_enabled: bool = True
    heuristics_enabled: bool = True
    rules_file: str = "facts.json"
    rules_refresh_seconds: int = 30
    rules_first: bool = True
    no_result_if_skipped: bool = False

    ai_enabled: bool = False
    ai_force: bool = False
    ai_demo_only: bool = False
    ai_trigger_tag: str = "#verify"
    ai_hourly_budget: int = 20
    ai_min_interval_ms: int = 4000
    ai_images_enabled: bool = False
    ai_max_image_bytes: int = 1_500_000
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"

    prior_alpha: float = 8.0
    prior_beta: float = 8.0
    maturity_min: int = 10
    trust_page_snapshots_enabled: bool = False

    recheck_enabled: bool = False
    recheck_interval_minutes: int = 60
    recheck_age_hours: float = 24.0
    recheck_batch_size: int = 50
    only_once: bool = True

    factcheck_on_create: bool = False
    factcheck_on_create_tag_only: bool = True
    autotrigger_reacts: int = 2
    autotrigger_unique_users: int = 2
    autotrigger_cooldown_minutes: int = 60

    retention_interval_minutes: int = 5
    base_ttl_hours: int = 24
    t1_reactions: int = 5
    t1_comments: int = 3
    t1_days: int = 7
    t2_reactions: int = 8
    t2_comments: int = 5
    purge_expired: bool = True

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    def has_trigger_tag(self, text: str) -> bool:
        tag = (self.ai_trigger_tag or "").strip().lower()
        return bool(tag) and tag in (text or "").lower()


def _load_config_file() -> dict[str, Any]:
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, encoding="utf-8") as f:
            user_config = json.load(f)
        merged = {**DEFAULT_CONFIG, **user_config}
        return merged
    return dict(DEFAULT_CONFIG)


def _read_env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    invalid: list[str] = []
    for name, (var, kind) in ENV_VARS.items():
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            overrides[name] = _PARSERS[kind](raw)
        except ValueError:
            invalid.append(f"{var}={raw!r}")
    if invalid:
        raise EnvironmentError(
            f"Invalid values for environment variables: {', '.join(invalid)}. "
            "Please fix them in your .env file or system environment."
        )
    return overrides


def load_settings() -> Settings:
    config = _load_config_file()
    config.update(_read_env_overrides())

    known = {name: config[name] for name in DEFAULT_CONFIG if name in config}
    settings = Settings(**known)

    if settings.only_once and settings.recheck_enabled:
        logger.warning(
            "TRUST_FACTCHECK_ONLY_ONCE and TRUST_RECHECK_ENABLED are both on: "
            "only-once gates the engagement auto-trigger, the re-check job still "
            "appends results for posts whose latest verdict is unverified"
        )
    return settings
