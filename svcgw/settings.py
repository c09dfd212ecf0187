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
    manifest_path: str = os.getenv("SVCGW_MANIFEST", "deployment.yml")
    db_path: str = os.getenv("SVCGW_DB_PATH", "svcgw.db")
    log_level: str = os.getenv("SVCGW_LOG_LEVEL", "INFO")
    launcher: str = os.getenv("SVCGW_LAUNCHER", "docker")  # docker|subprocess
    docker_network: str = os.getenv("SVCGW_DOCKER_NETWORK", "svcgw")
    docker_internal_network: bool = _env_bool("SVCGW_DOCKER_INTERNAL_NETWORK", True)

    # Supervision
    poll_interval_s: float = _env_float("SVCGW_POLL_INTERVAL_S", 1.0)
    dependency_timeout_s: float = _env_float("SVCGW_DEPENDENCY_TIMEOUT_S", 60.0)
    startup_timeout_s: float = _env_float("SVCGW_STARTUP_TIMEOUT_S", 30.0)
    grace_period_s: float = _env_float("SVCGW_GRACE_PERIOD_S", 10.0)
    backoff_base_s: float = _env_float("SVCGW_BACKOFF_BASE_S", 1.0)
    backoff_ceiling_s: float = _env_float("SVCGW_BACKOFF_CEILING_S", 60.0)
    health_fail_threshold: int = _env_int("SVCGW_HEALTH_FAIL_THRESHOLD", 3)
    health_timeout_s: float = _env_float("SVCGW_HEALTH_TIMEOUT_S", 2.0)

    # Gateway
    listen_host: str = os.getenv("SVCGW_LISTEN_HOST", "0.0.0.0")
    gateway_timeout_s: int = _env_int("SVCGW_GATEWAY_TIMEOUT_S", 30)

    # Control API
    control_host: str = os.getenv("SVCGW_CONTROL_HOST", "127.0.0.1")
    control_port: int = _env_int("SVCGW_CONTROL_PORT", 9900)
    admin_user: str = os.getenv("SVCGW_ADMIN_USER", "admin")
    admin_password: str = os.getenv("SVCGW_ADMIN_PASSWORD", "change-me")

    # Email alerting (optional)
    enable_email: bool = _env_bool("SVCGW_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("SVCGW_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("SVCGW_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("SVCGW_SMTP_USER")
    smtp_password: str | None = os.getenv("SVCGW_SMTP_PASSWORD")
    email_from: str | None = os.getenv("SVCGW_EMAIL_FROM")
    email_to: str | None = os.getenv("SVCGW_EMAIL_TO")


settings = Settings()
