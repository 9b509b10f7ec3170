from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _default_env_file() -> str:
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    timeseries_url: Optional[str]
    relational_url: Optional[str]

    redis_url: str
    rate_guard_backend: str
    rate_guard_window_seconds: float
    rate_guard_max_entries: int

    mqtt_enabled: bool
    mqtt_broker_host: str
    mqtt_broker_port: int
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    mqtt_subscribe_topic: str

    storage_timeout_seconds: float
    publish_timeout_seconds: float

    ingest_workers: int
    ingest_queue_size: int
    sink_workers: int

    availability_sweep_seconds: float

    log_level: str


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("PIOT_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///piot.db"),
        timeseries_url=os.getenv("TIMESERIES_URL") or None,
        relational_url=os.getenv("RELATIONAL_URL") or None,
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        rate_guard_backend=os.getenv("RATE_GUARD_BACKEND", "memory").strip().lower(),
        rate_guard_window_seconds=float(os.getenv("RATE_GUARD_WINDOW_SECONDS", "5.0")),
        rate_guard_max_entries=int(os.getenv("RATE_GUARD_MAX_ENTRIES", "10000")),
        mqtt_enabled=_env_bool("MQTT_ENABLED", "true"),
        mqtt_broker_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
        mqtt_broker_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
        mqtt_username=os.getenv("MQTT_USERNAME") or None,
        mqtt_password=os.getenv("MQTT_PASSWORD") or None,
        mqtt_subscribe_topic=os.getenv("MQTT_SUBSCRIBE_TOPIC", "org/#"),
        storage_timeout_seconds=float(os.getenv("STORAGE_TIMEOUT_SECONDS", "5.0")),
        publish_timeout_seconds=float(os.getenv("PUBLISH_TIMEOUT_SECONDS", "2.0")),
        ingest_workers=int(os.getenv("INGEST_WORKERS", "4")),
        ingest_queue_size=int(os.getenv("INGEST_QUEUE_SIZE", "1000")),
        sink_workers=int(os.getenv("SINK_WORKERS", "4")),
        availability_sweep_seconds=float(os.getenv("AVAILABILITY_SWEEP_SECONDS", "30.0")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
