"""Runtime configuration for agent instances, the gateway and the CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class TaskSettings:
    """Retry and backoff policy applied by every task lifecycle manager."""

    default_max_retries: int = 3
    backoff_base_ms: int = 1_000
    backoff_max_ms: int = 300_000
    retry_delay_ms: int = 60_000


@dataclass(slots=True)
class AlarmSettings:
    """Alarm batch size and whether alarms are backed by real timers."""

    batch_size: int = 10
    enabled: bool = True


@dataclass(slots=True)
class ServerSettings:
    """Gateway HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8787


@dataclass(slots=True)
class LoggingSettings:
    """Console/file logging settings."""

    level: str = "INFO"
    log_dir: Path | None = None


@dataclass(slots=True)
class HealthSettings:
    """Endpoints probed by the health agent."""

    endpoints: tuple[str, ...] = ()
    timeout_seconds: float = 10.0
    latency_warn_ms: int = 500
    latency_critical_ms: int = 2_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    data_dir: Path = Path(".durable_agents")
    sqlite_busy_timeout_ms: int = 5_000
    tasks: TaskSettings = field(default_factory=TaskSettings)
    alarm: AlarmSettings = field(default_factory=AlarmSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    health: HealthSettings = field(default_factory=HealthSettings)

    @classmethod
    def from_env(cls, data_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        log_dir = os.getenv("DURABLE_AGENTS_LOG_DIR", "").strip()
        return cls(
            data_dir=data_dir or Path(os.getenv("DURABLE_AGENTS_DATA_DIR", ".durable_agents")),
            sqlite_busy_timeout_ms=int(os.getenv("DURABLE_AGENTS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            tasks=TaskSettings(
                default_max_retries=int(os.getenv("DURABLE_AGENTS_DEFAULT_MAX_RETRIES", "3")),
                backoff_base_ms=int(os.getenv("DURABLE_AGENTS_BACKOFF_BASE_MS", "1000")),
                backoff_max_ms=int(os.getenv("DURABLE_AGENTS_BACKOFF_MAX_MS", "300000")),
                retry_delay_ms=int(os.getenv("DURABLE_AGENTS_RETRY_DELAY_MS", "60000")),
            ),
            alarm=AlarmSettings(
                batch_size=int(os.getenv("DURABLE_AGENTS_ALARM_BATCH_SIZE", "10")),
                enabled=_env_bool("DURABLE_AGENTS_ALARM_ENABLED", default=True),
            ),
            server=ServerSettings(
                host=os.getenv("DURABLE_AGENTS_HOST", "127.0.0.1"),
                port=int(os.getenv("DURABLE_AGENTS_PORT", "8787")),
            ),
            logging=LoggingSettings(
                level=os.getenv("DURABLE_AGENTS_LOG_LEVEL", "INFO").strip().upper(),
                log_dir=Path(log_dir) if log_dir else None,
            ),
            health=HealthSettings(
                endpoints=_collect_endpoints(),
                timeout_seconds=float(os.getenv("DURABLE_AGENTS_HEALTH_TIMEOUT_SECONDS", "10")),
                latency_warn_ms=int(os.getenv("DURABLE_AGENTS_HEALTH_LATENCY_WARN_MS", "500")),
                latency_critical_ms=int(
                    os.getenv("DURABLE_AGENTS_HEALTH_LATENCY_CRITICAL_MS", "2000"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot honor."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("DURABLE_AGENTS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.tasks.default_max_retries < 0:
            raise ValueError("DURABLE_AGENTS_DEFAULT_MAX_RETRIES must be >= 0.")
        if self.tasks.backoff_base_ms <= 0:
            raise ValueError("DURABLE_AGENTS_BACKOFF_BASE_MS must be > 0.")
        if self.tasks.backoff_max_ms < self.tasks.backoff_base_ms:
            raise ValueError(
                "DURABLE_AGENTS_BACKOFF_MAX_MS must be >= DURABLE_AGENTS_BACKOFF_BASE_MS.",
            )
        if self.tasks.retry_delay_ms < 0:
            raise ValueError("DURABLE_AGENTS_RETRY_DELAY_MS must be >= 0.")
        if self.alarm.batch_size <= 0:
            raise ValueError("DURABLE_AGENTS_ALARM_BATCH_SIZE must be > 0.")
        if not 0 < self.server.port < 65536:
            raise ValueError(f"Invalid DURABLE_AGENTS_PORT: {self.server.port!r}")
        if logging.getLevelName(self.logging.level) == f"Level {self.logging.level}":
            raise ValueError(f"Invalid DURABLE_AGENTS_LOG_LEVEL: {self.logging.level!r}")
        if self.health.timeout_seconds <= 0:
            raise ValueError("DURABLE_AGENTS_HEALTH_TIMEOUT_SECONDS must be > 0.")
        for endpoint in self.health.endpoints:
            _validate_endpoint_url(endpoint)


def _collect_endpoints() -> tuple[str, ...]:
    raw = os.getenv("DURABLE_AGENTS_HEALTH_ENDPOINTS", "").strip()
    if not raw:
        return ()
    deduped: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return tuple(deduped)


def _validate_endpoint_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid health endpoint URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
