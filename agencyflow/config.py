"""
Runtime configuration for AgencyFlow.

All settings come from environment variables (a local .env file is loaded
first). Use get_settings() to share one instance per process.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def normalize_database_url(url: str) -> str:
    # Railway/Heroku style URLs
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass
class Settings:
    database_url: str = "sqlite:///./agencyflow.db"
    redis_url: Optional[str] = None

    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None

    # Compute job router (self-hosted ComfyUI workers)
    runpod_dedicated_url: Optional[str] = None
    runpod_serverless_url: Optional[str] = None
    runpod_api_key: Optional[str] = None
    dedicated_timeout_seconds: float = 30.0
    job_poll_interval_seconds: float = 3.0
    job_max_poll_attempts: int = 200
    job_map_ttl_seconds: float = 3600.0
    job_map_eviction_interval_seconds: float = 300.0

    # Hosted APIs
    wavespeed_api_key: Optional[str] = None
    wavespeed_min_delay_seconds: float = 1.5
    openrouter_api_key: Optional[str] = None
    replicate_api_token: Optional[str] = None
    app_url: str = "http://localhost:3000"
    queue_idle_timeout_seconds: float = 300.0

    # Scheduling / execution
    scheduler_enabled: bool = True
    scheduler_poll_interval_seconds: float = 60.0
    run_execution_mode: str = "inprocess"
    node_claim_timeout_seconds: float = 3600.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=normalize_database_url(os.getenv("DATABASE_URL", cls.database_url)),
            redis_url=os.getenv("REDIS_URL"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            json_logs=_env_bool("JSON_LOGS", False),
            log_file=os.getenv("LOG_FILE"),
            runpod_dedicated_url=os.getenv("RUNPOD_DEDICATED_URL") or None,
            runpod_serverless_url=os.getenv("RUNPOD_SERVERLESS_URL") or None,
            runpod_api_key=os.getenv("RUNPOD_API_KEY"),
            dedicated_timeout_seconds=_env_float("DEDICATED_TIMEOUT_SECONDS", 30.0),
            job_poll_interval_seconds=_env_float("JOB_POLL_INTERVAL_SECONDS", 3.0),
            job_max_poll_attempts=_env_int("JOB_MAX_POLL_ATTEMPTS", 200),
            job_map_ttl_seconds=_env_float("JOB_MAP_TTL_SECONDS", 3600.0),
            job_map_eviction_interval_seconds=_env_float("JOB_MAP_EVICTION_INTERVAL_SECONDS", 300.0),
            wavespeed_api_key=os.getenv("WAVESPEED_API_KEY"),
            wavespeed_min_delay_seconds=_env_float("WAVESPEED_MIN_DELAY_SECONDS", 1.5),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
            replicate_api_token=os.getenv("REPLICATE_API_TOKEN"),
            app_url=os.getenv("APP_URL", "http://localhost:3000"),
            queue_idle_timeout_seconds=_env_float("QUEUE_IDLE_TIMEOUT_SECONDS", 300.0),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
            scheduler_poll_interval_seconds=_env_float("SCHEDULER_POLL_INTERVAL_SECONDS", 60.0),
            run_execution_mode=os.getenv("RUN_EXECUTION_MODE", "inprocess").lower(),
            node_claim_timeout_seconds=_env_float("NODE_CLAIM_TIMEOUT_SECONDS", 3600.0),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
