from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("FLEET_DB_PATH", "fleet.db")
    poll_interval_s: float = _env_float("FLEET_POLL_INTERVAL_S", 2.0)
    driver: str = os.getenv("FLEET_DRIVER", "simulated")  # simulated|docker
    docker_network: str = os.getenv("FLEET_DOCKER_NETWORK", "fleet")

    # Probes
    probe_workers: int = _env_int("FLEET_PROBE_WORKERS", 8)

    # Action retries (exponential backoff)
    action_attempts: int = _env_int("FLEET_ACTION_ATTEMPTS", 4)
    action_backoff_s: float = _env_float("FLEET_ACTION_BACKOFF_S", 0.5)
    action_backoff_max_s: float = _env_float("FLEET_ACTION_BACKOFF_MAX_S", 8.0)

    # Rollouts
    progress_deadline_s: float = _env_float("FLEET_PROGRESS_DEADLINE_S", 600.0)

    # Email alerting (optional)
    enable_email: bool = _env_bool("FLEET_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("FLEET_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("FLEET_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("FLEET_SMTP_USER")
    smtp_password: str | None = os.getenv("FLEET_SMTP_PASSWORD")
    email_from: str | None = os.getenv("FLEET_EMAIL_FROM")
    email_to: str | None = os.getenv("FLEET_EMAIL_TO")


settings = Settings()
