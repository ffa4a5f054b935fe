# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Process entry points: build a worker from configuration and run it.

The shop integration (order/user repositories, template renderer, PDF
generator) is supplied by a factory named in ``[worker] collaborators`` as
``module:callable``. The factory receives the ``WorkerConfig`` and returns a
``Collaborators`` bundle; it may use ``smtp_transport_from_config`` and
``ConfiguredSettings`` for the transport and the admin address.

Two ways to run:

- ``build_app(config)``: FastAPI app whose lifespan starts and stops the
  worker; uvicorn delivers SIGTERM/SIGINT to the lifespan shutdown.
- ``run_worker(config)``: worker only, with its own signal handlers.
"""

from __future__ import annotations

import asyncio
import importlib
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .broker import SqliteJobBroker
from .collaborators import Collaborators
from .config import WorkerConfig
from .context import WorkerContext
from .dead_letter import DeadLetterLogger
from .logger import get_logger
from .shutdown import ShutdownReport
from .transport import SmtpTransport
from .worker import EmailWorker

_logger = get_logger("EmailQueueServer")


class ConfiguredSettings:
    """``SettingsProvider`` returning the admin address from configuration."""

    def __init__(self, admin_email: str | None):
        self.admin_email = admin_email

    async def get_admin_email(self) -> str | None:
        return self.admin_email


def smtp_transport_from_config(config: WorkerConfig) -> SmtpTransport:
    if not config.smtp_host or not config.smtp_sender:
        raise ValueError("SMTP host and sender must be configured")
    return SmtpTransport(
        host=config.smtp_host,
        port=config.smtp_port,
        user=config.smtp_user,
        password=config.smtp_password,
        use_tls=config.smtp_use_tls,
        sender=config.smtp_sender,
        timeout=config.smtp_timeout,
    )


def load_factory(path: str) -> Callable[[WorkerConfig], Collaborators]:
    """Resolve a ``module:callable`` reference."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Collaborators factory must be 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{path!r} is not callable")
    return factory


def build_collaborators(config: WorkerConfig) -> Collaborators:
    if not config.collaborators:
        raise ValueError("No collaborators factory configured ([worker] collaborators / EQW_COLLABORATORS)")
    collaborators = load_factory(config.collaborators)(config)
    if not isinstance(collaborators, Collaborators):
        raise TypeError(f"{config.collaborators} returned {type(collaborators).__name__}, expected Collaborators")
    return collaborators


def build_worker(config: WorkerConfig, collaborators: Collaborators | None = None) -> EmailWorker:
    """Assemble broker, context and worker from ``config``."""
    for warning in config.validate():
        _logger.warning("Configuration warning: %s", warning)
    context = WorkerContext.create(
        delivery_ttl_seconds=config.delivery_ttl_seconds,
        dead_letters=DeadLetterLogger(backoff=config.retry_backoff),
    )
    broker = SqliteJobBroker(
        config.db_path, default_max_attempts=config.max_attempts, lifecycle=context.lifecycle
    )
    return EmailWorker(
        broker,
        collaborators or build_collaborators(config),
        context=context,
        concurrency=config.concurrency,
        rate_limit_max=config.rate_limit_max,
        rate_limit_duration_ms=config.rate_limit_duration_ms,
        poll_interval=config.poll_interval,
        stalled_interval=config.stalled_interval,
        max_stalled_count=config.max_stalled_count,
        cleanup_interval=config.delivery_cleanup_interval,
        backoff=config.retry_backoff,
        reconnect_backoff=config.reconnect_backoff,
        max_reconnect_attempts=config.max_reconnect_attempts,
        shutdown_timeout=config.shutdown_timeout_ms / 1000,
        shutdown_poll_interval=config.shutdown_poll_interval_ms / 1000,
        frontend_url=config.frontend_url,
    )


def build_app(config: WorkerConfig, worker: EmailWorker | None = None) -> FastAPI:
    worker = worker or build_worker(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        _logger.info("Starting email queue worker...")
        await worker.start()
        try:
            yield
        finally:
            _logger.info("Stopping email queue worker...")
            await worker.stop()

    return create_app(worker, api_token=config.api_token, lifespan=lifespan)


async def run_worker(config: WorkerConfig, worker: EmailWorker | None = None) -> ShutdownReport:
    """Run the worker without HTTP until SIGTERM/SIGINT completes the shutdown."""
    worker = worker or build_worker(config)
    await worker.start()
    worker.shutdown_coordinator.install_signal_handlers()
    while not worker.shutdown_coordinator.started:
        await asyncio.sleep(0.5)
    return await worker.shutdown_coordinator.shutdown("signal")
