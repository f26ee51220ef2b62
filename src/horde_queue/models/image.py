from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from horde_queue.models import Base


class GeneratedImage(Base):
    """A downloaded result image plus its thumbnail.

    Prompt and request payload are copied from the owning request so the
    image stays queryable after the request row is deleted.
    """

    __tablename__ = "generated_images"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True)
    request_id: Mapped[str | None] = mapped_column(
        ForeignKey("horde_requests.uuid"), nullable=True, index=True
    )
    date_created: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, index=True
    )
    backend: Mapped[str] = mapped_column(String(50), default="AI Horde")
    prompt_simple: Mapped[str | None] = mapped_column(Text, default=None)
    full_request: Mapped[dict | None] = mapped_column(JSON, default=None)
    full_response: Mapped[dict | None] = mapped_column(JSON, default=None)

    # Paths relative to the storage images directory
    image_path: Mapped[str] = mapped_column(String(255))
    thumbnail_path: Mapped[str] = mapped_column(String(255))

    is_favorite: Mapped[bool] = mapped_column(Boolean, default=False)
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False)
