# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Worker configuration from an INI file and ``EQW_*`` environment variables.

Environment variables take precedence over the file. The file path comes
from ``EQW_CONFIG`` (default ``config.ini``); a missing file is not an error.

Config file sections/keys (environment variable in brackets):
  [broker] db_path (EQW_DB_PATH)
  [worker] concurrency (EQW_CONCURRENCY), rate_limit_max (EQW_RATE_LIMIT_MAX),
      rate_limit_duration_ms (EQW_RATE_LIMIT_DURATION_MS),
      poll_interval (EQW_POLL_INTERVAL), stalled_interval (EQW_STALLED_INTERVAL),
      max_stalled_count (EQW_MAX_STALLED_COUNT),
      collaborators (EQW_COLLABORATORS, ``module:callable``)
  [queue] max_attempts (EQW_MAX_ATTEMPTS)
  [retry] base_delay_ms, multiplier, max_delay_ms (EQW_RETRY_*)
  [resilience] max_reconnect_attempts, reconnect_base_delay_ms,
      reconnect_max_delay_ms, shutdown_timeout_ms, shutdown_poll_interval_ms
  [tracking] ttl_seconds (EQW_DELIVERY_TTL_SECONDS),
      cleanup_interval (EQW_DELIVERY_CLEANUP_INTERVAL)
  [smtp] host, port, user, password, use_tls, sender, timeout (EQW_SMTP_*)
  [server] host, port, api_token (EQW_HOST, EQW_PORT, EQW_API_TOKEN)
  [shop] admin_email (EQW_ADMIN_EMAIL), frontend_url (EQW_FRONTEND_URL)
  [logging] level (EQW_LOG_LEVEL)
"""

from __future__ import annotations

import configparser
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .backoff import BackoffCalculator

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class WorkerConfig:
    db_path: str = "/data/email_jobs.db"
    concurrency: int = 5
    rate_limit_max: int = 10
    rate_limit_duration_ms: int = 1000
    poll_interval: float = 1.0
    stalled_interval: float = 30.0
    max_stalled_count: int = 1
    collaborators: str | None = None
    max_attempts: int = 5
    retry_base_delay_ms: int = 60_000
    retry_multiplier: float = 5
    retry_max_delay_ms: int = 14_400_000
    max_reconnect_attempts: int = 10
    reconnect_base_delay_ms: int = 1000
    reconnect_max_delay_ms: int = 30_000
    shutdown_timeout_ms: int = 30_000
    shutdown_poll_interval_ms: int = 1000
    delivery_ttl_seconds: int = 24 * 3600
    delivery_cleanup_interval: float = 3600.0
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool | None = None
    smtp_sender: str | None = None
    smtp_timeout: float = 30.0
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: str | None = None
    admin_email: str | None = None
    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    @property
    def retry_backoff(self) -> BackoffCalculator:
        return BackoffCalculator(self.retry_base_delay_ms, self.retry_multiplier, self.retry_max_delay_ms)

    @property
    def reconnect_backoff(self) -> BackoffCalculator:
        return BackoffCalculator(self.reconnect_base_delay_ms, 2, self.reconnect_max_delay_ms)

    def validate(self) -> list[str]:
        """Return warnings for risky but accepted values."""
        warnings: list[str] = []
        if self.concurrency < 1 or self.concurrency > 50:
            warnings.append(f"Worker concurrency {self.concurrency} is outside the recommended range 1-50")
        per_second = self.rate_limit_max * 1000 / max(1, self.rate_limit_duration_ms)
        if per_second > 10:
            warnings.append(f"Rate limit of {per_second:.1f} emails/s may exceed SMTP provider limits")
        if self.max_attempts < 1 or self.max_attempts > 10:
            warnings.append(f"Max attempts {self.max_attempts} is outside the recommended range 1-10")
        if self.shutdown_timeout_ms < 5000 or self.shutdown_timeout_ms > 120_000:
            warnings.append(f"Shutdown timeout {self.shutdown_timeout_ms}ms is outside the recommended range 5s-120s")
        if self.max_reconnect_attempts < 1:
            warnings.append("Max reconnect attempts must be at least 1")
        if self.smtp_host and not self.smtp_sender:
            warnings.append("SMTP host configured without a sender address")
        return warnings

    def summary(self) -> dict[str, Any]:
        """Configuration as a dict with secrets masked."""
        data = asdict(self)
        for key in ("smtp_password", "api_token"):
            if data.get(key):
                data[key] = "***"
        return data


def load_config(path: str | os.PathLike[str] | None = None) -> WorkerConfig:
    """Load configuration from an INI file with ``EQW_*`` environment overrides."""
    config_path = Path(path or os.getenv("EQW_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, env: str, default: str | None = None) -> str | None:
        value = os.getenv(env)
        if value is not None:
            return value
        if parser.has_option(section, option):
            return parser.get(section, option)
        return default

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        return default if value in (None, "") else int(value)

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        return default if value in (None, "") else float(value)

    def get_bool(section: str, option: str, env: str, default: bool | None = None) -> bool | None:
        value = get(section, option, env)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in _TRUE:
            return True
        if normalized in _FALSE:
            return False
        return default

    defaults = WorkerConfig()
    config = WorkerConfig(
        db_path=os.path.expanduser(get("broker", "db_path", "EQW_DB_PATH", defaults.db_path)),
        concurrency=get_int("worker", "concurrency", "EQW_CONCURRENCY", defaults.concurrency),
        rate_limit_max=get_int("worker", "rate_limit_max", "EQW_RATE_LIMIT_MAX", defaults.rate_limit_max),
        rate_limit_duration_ms=get_int(
            "worker", "rate_limit_duration_ms", "EQW_RATE_LIMIT_DURATION_MS", defaults.rate_limit_duration_ms
        ),
        poll_interval=get_float("worker", "poll_interval", "EQW_POLL_INTERVAL", defaults.poll_interval),
        stalled_interval=get_float("worker", "stalled_interval", "EQW_STALLED_INTERVAL", defaults.stalled_interval),
        max_stalled_count=get_int("worker", "max_stalled_count", "EQW_MAX_STALLED_COUNT", defaults.max_stalled_count),
        collaborators=get("worker", "collaborators", "EQW_COLLABORATORS"),
        max_attempts=get_int("queue", "max_attempts", "EQW_MAX_ATTEMPTS", defaults.max_attempts),
        retry_base_delay_ms=get_int("retry", "base_delay_ms", "EQW_RETRY_BASE_DELAY_MS", defaults.retry_base_delay_ms),
        retry_multiplier=get_float("retry", "multiplier", "EQW_RETRY_MULTIPLIER", defaults.retry_multiplier),
        retry_max_delay_ms=get_int("retry", "max_delay_ms", "EQW_RETRY_MAX_DELAY_MS", defaults.retry_max_delay_ms),
        max_reconnect_attempts=get_int(
            "resilience", "max_reconnect_attempts", "EQW_MAX_RECONNECT_ATTEMPTS", defaults.max_reconnect_attempts
        ),
        reconnect_base_delay_ms=get_int(
            "resilience", "reconnect_base_delay_ms", "EQW_RECONNECT_BASE_DELAY_MS", defaults.reconnect_base_delay_ms
        ),
        reconnect_max_delay_ms=get_int(
            "resilience", "reconnect_max_delay_ms", "EQW_RECONNECT_MAX_DELAY_MS", defaults.reconnect_max_delay_ms
        ),
        shutdown_timeout_ms=get_int(
            "resilience", "shutdown_timeout_ms", "EQW_SHUTDOWN_TIMEOUT_MS", defaults.shutdown_timeout_ms
        ),
        shutdown_poll_interval_ms=get_int(
            "resilience", "shutdown_poll_interval_ms", "EQW_SHUTDOWN_POLL_INTERVAL_MS",
            defaults.shutdown_poll_interval_ms,
        ),
        delivery_ttl_seconds=get_int(
            "tracking", "ttl_seconds", "EQW_DELIVERY_TTL_SECONDS", defaults.delivery_ttl_seconds
        ),
        delivery_cleanup_interval=get_float(
            "tracking", "cleanup_interval", "EQW_DELIVERY_CLEANUP_INTERVAL", defaults.delivery_cleanup_interval
        ),
        smtp_host=get("smtp", "host", "EQW_SMTP_HOST"),
        smtp_port=get_int("smtp", "port", "EQW_SMTP_PORT", defaults.smtp_port),
        smtp_user=get("smtp", "user", "EQW_SMTP_USER"),
        smtp_password=get("smtp", "password", "EQW_SMTP_PASSWORD"),
        smtp_use_tls=get_bool("smtp", "use_tls", "EQW_SMTP_USE_TLS"),
        smtp_sender=get("smtp", "sender", "EQW_SMTP_SENDER"),
        smtp_timeout=get_float("smtp", "timeout", "EQW_SMTP_TIMEOUT", defaults.smtp_timeout),
        http_host=get("server", "host", "EQW_HOST", defaults.http_host),
        http_port=get_int("server", "port", "EQW_PORT", defaults.http_port),
        api_token=get("server", "api_token", "EQW_API_TOKEN"),
        admin_email=get("shop", "admin_email", "EQW_ADMIN_EMAIL"),
        frontend_url=get("shop", "frontend_url", "EQW_FRONTEND_URL", defaults.frontend_url),
        log_level=(get("logging", "level", "EQW_LOG_LEVEL", defaults.log_level) or "INFO").upper(),
    )
    if isinstance(config.api_token, str):
        config.api_token = config.api_token.strip() or None
    return config
