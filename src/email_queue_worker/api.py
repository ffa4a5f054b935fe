# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""
FastAPI application factory and HTTP schemas for the email queue worker.

The module exposes a ``create_app`` function that builds the operator API:
worker health, broker resilience, delivery tracking, dead letters, queue
counts and pause control, job submission, lookup and removal, and
Prometheus metrics. Authentication is enforced through a configurable API
token carried in the ``X-API-Token`` header.
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .errors import BrokerConnectionError, EventValidationError
from .models import EnqueueRequest, VerifyDeliveryRequest
from .worker import EmailWorker

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by command responses."""
    ok: bool
    error: Optional[str] = None


class ReconnectResponse(BaseModel):
    success: bool
    message: str


class EnqueueResponse(CommandStatus):
    id: Optional[str] = None
    duplicate: bool = False
    priority: Optional[int] = None


class DeadLettersResponse(CommandStatus):
    count: int
    entries: List[Dict[str, Any]]


class QueueResponse(CommandStatus):
    counts: Dict[str, int]
    is_paused: Optional[bool] = None


class ControlResponse(CommandStatus):
    is_paused: bool


class JobResponse(CommandStatus):
    job: Dict[str, Any]


def create_app(
    worker: EmailWorker,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    worker:
        The :class:`email_queue_worker.worker.EmailWorker` whose state the
        endpoints expose.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    api = FastAPI(title="Email Queue Worker", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.worker = worker
    router = APIRouter(dependencies=[auth_dependency])

    @router.get("/health")
    async def health():
        """Worker health; 503 unless the worker is healthy."""
        payload = worker.get_worker_health()
        code = status.HTTP_200_OK if payload["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(content=jsonable_encoder(payload), status_code=code)

    @router.get("/resilience")
    async def resilience():
        return worker.get_resilience_status()

    @router.post("/resilience/reconnect", response_model=ReconnectResponse)
    async def reconnect():
        """Reconnect to the broker now, resetting the attempt counter on success."""
        result = await worker.trigger_reconnection()
        return ReconnectResponse.model_validate(result)

    @router.get("/delivery-tracking")
    async def delivery_tracking():
        return await worker.get_delivery_tracking_status()

    @router.post("/delivery-tracking/verify")
    async def verify_delivery(payload: VerifyDeliveryRequest):
        """Report whether an equivalent email was delivered within the TTL."""
        try:
            return await worker.verify_email_delivery(payload.event)
        except EventValidationError as exc:
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, exc.message)

    @router.get("/dead-letters", response_model=DeadLettersResponse)
    async def dead_letters(limit: int = 50):
        entries = worker.context.dead_letters.recent(limit)
        return DeadLettersResponse(ok=True, count=len(entries), entries=entries)

    @router.get("/queue", response_model=QueueResponse, response_model_exclude_none=True)
    async def queue():
        try:
            counts = await worker.broker.counts()
        except BrokerConnectionError as exc:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, exc.message)
        return QueueResponse(ok=True, counts=counts, is_paused=worker.is_paused)

    @router.post("/queue/pause", response_model=ControlResponse, response_model_exclude_none=True)
    async def pause():
        """Stop claiming new jobs; running jobs finish normally."""
        await worker.pause()
        return ControlResponse(ok=True, is_paused=worker.is_paused)

    @router.post("/queue/resume", response_model=ControlResponse, response_model_exclude_none=True)
    async def resume():
        await worker.resume()
        if worker.is_paused:
            raise HTTPException(status.HTTP_409_CONFLICT, "Cannot resume worker during shutdown")
        return ControlResponse(ok=True, is_paused=False)

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(job_id: str):
        try:
            job = await worker.broker.get_job(job_id)
        except BrokerConnectionError as exc:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, exc.message)
        if job is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"Job {job_id} not found")
        return JobResponse(ok=True, job=job)

    @router.delete("/jobs/{job_id}", response_model=CommandStatus, response_model_exclude_none=True)
    async def remove_job(job_id: str):
        """Delete a job whatever its status."""
        try:
            removed = await worker.broker.remove(job_id)
        except BrokerConnectionError as exc:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, exc.message)
        if not removed:
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"Job {job_id} not found")
        return CommandStatus(ok=True)

    @router.post("/jobs", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def enqueue(payload: EnqueueRequest):
        """Validate an event and add it to the queue."""
        try:
            result = await worker.broker.enqueue(
                payload.event,
                job_id=payload.job_id,
                max_attempts=payload.max_attempts,
                priority=payload.priority,
            )
        except EventValidationError as exc:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, exc.message)
        except BrokerConnectionError as exc:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, exc.message)
        return EnqueueResponse(ok=True, **result)

    @router.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics collected by the worker."""
        return Response(content=worker.context.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
