"""GenerationRequest model: one user-initiated unit of work.

Status lifecycle:
    pending → submitting → waiting ⇄ processing → downloading → completed
                        ↘ failed              ↘ failed (not found on server)
    (any in-flight state) → cancelled
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from horde_queue.models import Base

REQUEST_STATUS_PENDING = "pending"
REQUEST_STATUS_SUBMITTING = "submitting"
REQUEST_STATUS_WAITING = "waiting"
REQUEST_STATUS_PROCESSING = "processing"
REQUEST_STATUS_DOWNLOADING = "downloading"
REQUEST_STATUS_COMPLETED = "completed"
REQUEST_STATUS_FAILED = "failed"
REQUEST_STATUS_CANCELLED = "cancelled"

# Statuses tracked in the queue manager's in-flight map
IN_FLIGHT_STATUSES: list[str] = [
    REQUEST_STATUS_SUBMITTING,
    REQUEST_STATUS_WAITING,
    REQUEST_STATUS_PROCESSING,
]


class GenerationRequest(Base):
    __tablename__ = "horde_requests"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True)
    # Assigned by the Horde once submission succeeds
    horde_request_id: Mapped[str | None] = mapped_column(String(64), default=None)

    date_created: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, index=True
    )
    prompt: Mapped[str] = mapped_column(Text, default="")
    # Exact payload posted to /generate/async
    full_request: Mapped[dict] = mapped_column(JSON, default=dict)
    n: Mapped[int] = mapped_column(Integer, default=1)

    # --- Status tracking ---
    status: Mapped[str] = mapped_column(
        String(20), default=REQUEST_STATUS_PENDING, index=True
    )
    message: Mapped[str] = mapped_column(Text, default="")
    queue_position: Mapped[int] = mapped_column(Integer, default=0)
    wait_time: Mapped[int] = mapped_column(Integer, default=0)
    waiting: Mapped[int] = mapped_column(Integer, default=0)
    processing: Mapped[int] = mapped_column(Integer, default=0)
    finished: Mapped[int] = mapped_column(Integer, default=0)
    total_kudos_cost: Mapped[float] = mapped_column(default=0.0)
