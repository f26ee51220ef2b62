"""PendingDownload model: one result item of a finished request awaiting fetch."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from horde_queue.models import Base


class PendingDownload(Base):
    __tablename__ = "horde_pending_downloads"
    __table_args__ = (
        UniqueConstraint("request_id", "uri", name="uq_pending_downloads_request_uri"),
    )

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("horde_requests.uuid"), index=True
    )
    uri: Mapped[str] = mapped_column(Text)
    # The generation entry from /generate/status (seed, worker_id, censored, ...)
    full_response: Mapped[dict] = mapped_column(JSON, default=dict)
    date_created: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
