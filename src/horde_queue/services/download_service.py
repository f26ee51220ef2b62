"""Pending-download and generated-image records."""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from horde_queue.models.image import GeneratedImage
from horde_queue.models.pending_download import PendingDownload
from horde_queue.models.request import GenerationRequest

logger = logging.getLogger(__name__)


class PendingDownloadService:
    """CRUD for PendingDownload records.

    ``create`` is idempotent on ``(request_id, uri)``: enqueueing the same
    result item twice returns the record created the first time.
    """

    def create(
        self,
        db: Session,
        request_id: str,
        uri: str,
        full_response: dict | None = None,
    ) -> PendingDownload:
        existing = self.find_by_request_and_uri(db, request_id, uri)
        if existing is not None:
            logger.debug("Pending download for %s already queued", request_id)
            return existing

        download = PendingDownload(
            uuid=str(uuid.uuid4()),
            request_id=request_id,
            uri=uri,
            full_response=full_response or {},
        )
        db.add(download)
        try:
            db.commit()
        except IntegrityError:
            # Lost a race with another writer; the unique index kept theirs
            db.rollback()
            existing = self.find_by_request_and_uri(db, request_id, uri)
            if existing is None:
                raise
            return existing
        db.refresh(download)
        return download

    def get(self, db: Session, download_uuid: str) -> PendingDownload | None:
        return db.get(PendingDownload, download_uuid)

    def find_by_request_and_uri(
        self, db: Session, request_id: str, uri: str
    ) -> PendingDownload | None:
        stmt = select(PendingDownload).where(
            PendingDownload.request_id == request_id, PendingDownload.uri == uri
        )
        return db.scalars(stmt).first()

    def find_all(self, db: Session) -> list[PendingDownload]:
        stmt = select(PendingDownload).order_by(PendingDownload.date_created.asc())
        return list(db.scalars(stmt))

    def find_by_request(self, db: Session, request_id: str) -> list[PendingDownload]:
        stmt = select(PendingDownload).where(PendingDownload.request_id == request_id)
        return list(db.scalars(stmt))

    def count(self, db: Session) -> int:
        return db.scalar(select(func.count()).select_from(PendingDownload)) or 0

    def delete(self, db: Session, download_uuid: str) -> bool:
        """Delete a record; returns False when it was already gone."""
        download = self.get(db, download_uuid)
        if download is None:
            return False
        db.delete(download)
        db.commit()
        return True


class GeneratedImageService:
    """Creates and queries GeneratedImage records."""

    def create_image(
        self,
        db: Session,
        *,
        image_uuid: str,
        request: GenerationRequest | None,
        request_id: str,
        full_response: dict | None,
        image_path: str,
        thumbnail_path: str,
    ) -> GeneratedImage:
        """Persist a downloaded image, copying prompt and payload from its request."""
        image = GeneratedImage(
            uuid=image_uuid,
            request_id=request_id,
            backend="AI Horde",
            prompt_simple=request.prompt if request else None,
            full_request=request.full_request if request else None,
            full_response=full_response,
            image_path=image_path,
            thumbnail_path=thumbnail_path,
        )
        db.add(image)
        db.commit()
        db.refresh(image)
        logger.info("Saved image %s for request %s", image_uuid, request_id)
        return image
