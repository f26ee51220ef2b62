"""Request service: creates, updates and queries GenerationRequest records.

Keeps DB operations isolated from the queue manager so the scheduling logic
is easily testable.
"""

import logging
import uuid
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from horde_queue.models.request import (
    GenerationRequest,
    REQUEST_STATUS_CANCELLED,
    REQUEST_STATUS_COMPLETED,
    REQUEST_STATUS_FAILED,
    REQUEST_STATUS_PENDING,
)

logger = logging.getLogger(__name__)

# Horde prompts carry the negative prompt after this separator
NEGATIVE_PROMPT_SEPARATOR = "###"


def simple_prompt(params: dict) -> str:
    """Return the positive part of ``params["prompt"]``."""
    prompt = params.get("prompt") or ""
    return prompt.split(NEGATIVE_PROMPT_SEPARATOR)[0].strip()


class RequestService:
    """CRUD operations and status helpers for GenerationRequest records."""

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_request(
        self,
        db: Session,
        full_request: dict,
        *,
        prompt: str | None = None,
    ) -> GenerationRequest:
        """Create a new request in PENDING state and return it."""
        n = (full_request.get("params") or {}).get("n") or 1
        request = GenerationRequest(
            uuid=str(uuid.uuid4()),
            prompt=prompt if prompt is not None else simple_prompt(full_request),
            full_request=full_request,
            n=n,
            status=REQUEST_STATUS_PENDING,
            message="Waiting to be submitted",
        )
        db.add(request)
        db.commit()
        db.refresh(request)
        logger.info("Created request %s (n=%d)", request.uuid, n)
        return request

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, db: Session, request_uuid: str, **fields: Any) -> GenerationRequest | None:
        """Set ``fields`` on a request and commit."""
        request = self.get(db, request_uuid)
        if not request:
            logger.warning("update: request %s not found", request_uuid)
            return None
        for key, value in fields.items():
            setattr(request, key, value)
        db.commit()
        db.refresh(request)
        return request

    def mark_failed(self, db: Session, request_uuid: str, message: str) -> GenerationRequest | None:
        """Transition request to FAILED and record why."""
        logger.info("Request %s failed: %s", request_uuid, message)
        return self.update(db, request_uuid, status=REQUEST_STATUS_FAILED, message=message)

    def mark_completed(
        self, db: Session, request_uuid: str, message: str
    ) -> GenerationRequest | None:
        """Transition request to COMPLETED."""
        return self.update(db, request_uuid, status=REQUEST_STATUS_COMPLETED, message=message)

    def mark_cancelled(self, db: Session, request_uuid: str) -> GenerationRequest | None:
        """Transition request to CANCELLED."""
        return self.update(
            db, request_uuid, status=REQUEST_STATUS_CANCELLED, message="Cancelled"
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, db: Session, request_uuid: str) -> GenerationRequest | None:
        """Fetch a request by its local UUID."""
        return db.get(GenerationRequest, request_uuid)

    def list_by_status(
        self,
        db: Session,
        statuses: Iterable[str],
        *,
        limit: int | None = None,
        exclude: Iterable[str] = (),
    ) -> list[GenerationRequest]:
        """Return requests in any of ``statuses``, oldest first.

        ``exclude`` drops the given UUIDs before ``limit`` is applied.
        """
        stmt = select(GenerationRequest).where(GenerationRequest.status.in_(list(statuses)))
        excluded = list(exclude)
        if excluded:
            stmt = stmt.where(GenerationRequest.uuid.not_in(excluded))
        stmt = stmt.order_by(GenerationRequest.date_created.asc(), GenerationRequest.uuid)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(db.scalars(stmt))

    def count_by_status(self, db: Session, status: str) -> int:
        stmt = select(func.count()).select_from(GenerationRequest).where(
            GenerationRequest.status == status
        )
        return db.scalar(stmt) or 0
