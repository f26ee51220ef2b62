"""Requests API: enqueue, inspect and cancel Horde generation requests.

Implements:
  POST /api/requests               store a new pending request
  POST /api/requests/estimate      dry-run kudos cost of a payload
  GET  /api/requests/{uuid}        poll a single request
  POST /api/requests/{uuid}/cancel cancel an in-flight request
  GET  /api/queue/status           queue manager snapshot
"""

import logging
from datetime import datetime
from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from horde_queue.database import get_db
from horde_queue.models.request import GenerationRequest
from horde_queue.services.queue_manager import QueueManager
from horde_queue.services.request_service import RequestService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["requests"])
_request_service = RequestService()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class GenerationSubmit(BaseModel):
    """Body for POST /api/requests and /api/requests/estimate."""

    # Payload for /generate/async, passed through untouched
    payload: dict[str, Any]
    prompt: str | None = None


class RequestResponse(BaseModel):
    uuid: str
    horde_request_id: str | None
    date_created: datetime
    prompt: str
    n: int
    status: str
    message: str
    queue_position: int
    wait_time: int
    waiting: int
    processing: int
    finished: int
    total_kudos_cost: float

    model_config = {"from_attributes": True}


class CancelResponse(BaseModel):
    uuid: str
    cancelled: bool


class EstimateResponse(BaseModel):
    kudos: float


class QueueStatusResponse(BaseModel):
    in_flight: int
    ceiling: int
    is_running: bool
    pending_count: int
    pending_download_count: int


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_queue_manager(request: Request) -> QueueManager:
    manager = getattr(request.app.state, "queue_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue manager is not running",
        )
    return manager


def _upstream_error(exc: httpx.HTTPStatusError) -> HTTPException:
    logger.warning("AI Horde returned %s", exc.response.status_code)
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"AI Horde error: {exc.response.status_code}",
    )


def _load_request(request_uuid: str) -> GenerationRequest | None:
    db = get_db()
    try:
        return _request_service.get(db, request_uuid)
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/requests",
    response_model=RequestResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_request(
    body: GenerationSubmit,
    manager: QueueManager = Depends(get_queue_manager),
) -> RequestResponse:
    """Queue a generation; it is submitted once a slot frees up."""
    try:
        request = manager.enqueue(body.payload, prompt=body.prompt)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RequestResponse.model_validate(request)


@router.post("/requests/estimate", response_model=EstimateResponse)
async def estimate_request(
    body: GenerationSubmit,
    manager: QueueManager = Depends(get_queue_manager),
) -> EstimateResponse:
    if not body.payload.get("prompt"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="payload must include a prompt",
        )
    try:
        kudos = await manager.estimate_kudos(body.payload)
    except httpx.HTTPStatusError as exc:
        raise _upstream_error(exc) from exc
    return EstimateResponse(kudos=kudos)


@router.get("/requests/{request_uuid}", response_model=RequestResponse)
def get_request(request_uuid: str) -> RequestResponse:
    request = _load_request(request_uuid)
    if request is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")
    return RequestResponse.model_validate(request)


@router.post("/requests/{request_uuid}/cancel", response_model=CancelResponse)
async def cancel_request(
    request_uuid: str,
    manager: QueueManager = Depends(get_queue_manager),
) -> CancelResponse:
    """Cancel an in-flight request.

    Pending or finished requests are not in flight and answer 409.
    """
    try:
        cancelled = await manager.cancel(request_uuid)
    except httpx.HTTPStatusError as exc:
        raise _upstream_error(exc) from exc

    if not cancelled:
        if _load_request(request_uuid) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Request is not in progress",
        )
    return CancelResponse(uuid=request_uuid, cancelled=True)


@router.get("/queue/status", response_model=QueueStatusResponse)
def queue_status(manager: QueueManager = Depends(get_queue_manager)) -> QueueStatusResponse:
    return QueueStatusResponse(**manager.get_status())
