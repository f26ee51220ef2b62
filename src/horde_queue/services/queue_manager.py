"""Queue manager: drives generation requests through the AI Horde.

Two periodic loops share one ``QueueManager`` instance:

    queue loop     (every ``queue_interval`` s)
        submit_pending()  pending → submitting → processing
        check_active()    processing/waiting → (done) → handle_completed()
    download loop  (every ``download_interval`` s)
        process_downloads()  pending download → image + thumbnail + record

The store is the source of truth.  ``active_requests`` (local uuid → Horde
job id) only mirrors the in-flight subset of it and is rebuilt by
``recover()`` at boot.  The guarantees that keep overlapping passes from
duplicating work:

* ``submit_pending`` and ``process_downloads`` are single-flight; a second
  call while one is running returns immediately.
* A request is removed from ``active_requests`` before its completion
  handler runs, so only one polling pass can ever act on ``done``.
* A pending download is deleted before its fetch starts.  A crash after
  that point loses the image rather than saving it twice.

Errors inside a periodic stage are logged and reflected in the request's
status/message; they never escape the stage and never stop the rest of
the batch.
"""

import asyncio
import base64
import functools
import logging
import uuid
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy.orm import Session, sessionmaker

from horde_queue.config import settings
from horde_queue.database import SessionLocal
from horde_queue.logging_config import log_context
from horde_queue.models.request import (
    GenerationRequest,
    IN_FLIGHT_STATUSES,
    REQUEST_STATUS_DOWNLOADING,
    REQUEST_STATUS_PENDING,
    REQUEST_STATUS_PROCESSING,
    REQUEST_STATUS_SUBMITTING,
    REQUEST_STATUS_WAITING,
)
from horde_queue.services.download_service import (
    GeneratedImageService,
    PendingDownloadService,
)
from horde_queue.services.horde_client import HordeClient, is_not_found
from horde_queue.services.imaging import extension_for, make_thumbnail, sniff_format
from horde_queue.services.request_service import RequestService
from horde_queue.services.storage import StorageService, get_storage

logger = logging.getLogger(__name__)

# In-flight marker for a request whose submission has not returned a job id yet
SUBMITTING = "__submitting__"


def _submission_error_message(exc: Exception) -> str:
    """Short, storable reason for a failed submission."""
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code == 401:
            return "Invalid API key"
        if exc.response.status_code == 403:
            return "Access forbidden"
    return "Failed to submit request"


def _downloading_message(queued: int, censored: int) -> str:
    noun = "image" if queued == 1 else "images"
    message = f"Downloading {queued} {noun}"
    if censored:
        message += f" ({censored} censored)"
    return message


def _decode_inline_image(uri: str) -> bytes:
    """Decode a ``data:`` URL or bare base64 payload (R2 upload disabled)."""
    payload = uri.split(",", 1)[1] if uri.startswith("data:") else uri
    return base64.b64decode(payload, validate=True)


class QueueManager:
    """In-memory scheduler over the persistent request queue.

    Construct once at startup, call ``recover()``, then ``start()``.
    """

    def __init__(
        self,
        client: HordeClient,
        *,
        session_factory: sessionmaker | Callable[[], Session] | None = None,
        storage: StorageService | None = None,
        max_active_requests: int | None = None,
        check_spacing: float | None = None,
        queue_interval: float | None = None,
        download_interval: float | None = None,
        thumbnail_size: int | None = None,
        thumbnail_quality: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self._session_factory = session_factory or SessionLocal
        self.storage = storage or get_storage()

        def _pick(value: Any, default: Any) -> Any:
            return default if value is None else value

        self.max_active_requests = _pick(max_active_requests, settings.max_active_requests)
        self.check_spacing = _pick(check_spacing, settings.check_spacing)
        self.queue_interval = _pick(queue_interval, settings.queue_interval)
        self.download_interval = _pick(download_interval, settings.download_interval)
        self.thumbnail_size = _pick(thumbnail_size, settings.thumbnail_size)
        self.thumbnail_quality = _pick(thumbnail_quality, settings.thumbnail_quality)
        self._sleep = sleep

        self.active_requests: dict[str, str] = {}
        self.active_downloads: set[str] = set()
        self.is_submitting = False
        self.is_downloading = False

        self._requests = RequestService()
        self._downloads = PendingDownloadService()
        self._images = GeneratedImageService()

        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not self._stop_event.is_set()

    def start(self) -> None:
        """Install the queue and download loops on the running event loop."""
        if self._tasks:
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(
                self._run_periodic(self.process_queue, self.queue_interval),
                name="horde-queue",
            ),
            asyncio.create_task(
                self._run_periodic(self.process_downloads, self.download_interval),
                name="horde-downloads",
            ),
        ]
        logger.info(
            "Queue manager started",
            extra={"max_active_requests": self.max_active_requests},
        )

    async def stop(self) -> None:
        """Signal both loops to exit and wait for the current passes to finish."""
        if not self._tasks:
            return
        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Queue manager stopped")

    async def _run_periodic(self, stage: Callable[[], Awaitable[None]], interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                await stage()
            except Exception:
                logger.exception("Periodic stage %s failed", stage.__name__)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def process_queue(self) -> None:
        """One tick of the queue loop: fill free slots, then poll."""
        try:
            if len(self.active_requests) < self.max_active_requests:
                await self.submit_pending()
            await self.check_active()
        except Exception:
            logger.exception("Error processing queue")

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self) -> dict[str, int]:
        """Rebuild ``active_requests`` from the store.  Run once, before ``start()``.

        In-flight requests that already hold a Horde job id resume polling
        where they left off.  Those without one crashed mid-submission and
        can never be found again, so they fail.  Downloading requests whose
        pending downloads are all gone are closed out as completed.
        """
        db = self._session_factory()
        try:
            tracked = [
                (r.uuid, r.horde_request_id)
                for r in self._requests.list_by_status(db, IN_FLIGHT_STATUSES)
            ]
            resumed = failed = 0
            for request_uuid, horde_id in tracked:
                if horde_id:
                    self.active_requests[request_uuid] = horde_id
                    resumed += 1
                else:
                    self._requests.mark_failed(db, request_uuid, "Lost tracking after restart")
                    failed += 1

            downloading = [
                r.uuid for r in self._requests.list_by_status(db, [REQUEST_STATUS_DOWNLOADING])
            ]
            completed = 0
            for request_uuid in downloading:
                if not self._downloads.find_by_request(db, request_uuid):
                    self._requests.mark_completed(db, request_uuid, "All images downloaded")
                    completed += 1
        finally:
            db.close()

        summary = {"resumed": resumed, "failed": failed, "completed": completed}
        logger.info("Recovered queue state", extra=summary)
        return summary

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_pending(self) -> None:
        """Submit pending requests until the in-flight ceiling is reached."""
        if self.is_submitting:
            return
        self.is_submitting = True
        db = self._session_factory()
        try:
            available = self.max_active_requests - len(self.active_requests)
            if available <= 0:
                return

            batch = [
                (r.uuid, dict(r.full_request or {}))
                for r in self._requests.list_by_status(
                    db,
                    [REQUEST_STATUS_PENDING],
                    limit=available,
                    exclude=list(self.active_requests),
                )
            ]
            for request_uuid, params in batch:
                if request_uuid in self.active_requests:
                    continue
                with log_context(request_uuid=request_uuid):
                    try:
                        await self._submit_one(db, request_uuid, params)
                    except Exception:
                        logger.exception("Unexpected error submitting request %s", request_uuid)
        finally:
            db.close()
            self.is_submitting = False

    async def _submit_one(self, db: Session, request_uuid: str, params: dict) -> None:
        # Claim the slot before the first await so no other pass can pick it up
        self.active_requests[request_uuid] = SUBMITTING
        try:
            self._requests.update(
                db,
                request_uuid,
                status=REQUEST_STATUS_SUBMITTING,
                message="Submitting to AI Horde...",
            )
            response = await self.client.submit(params)
            horde_id = response["id"]
        except Exception as exc:
            logger.error("Error submitting request %s: %s", request_uuid, exc)
            if self.active_requests.pop(request_uuid, None) is not None:
                self._requests.mark_failed(db, request_uuid, _submission_error_message(exc))
            return

        if self.active_requests.get(request_uuid) != SUBMITTING:
            # Cancelled while the submission was in flight
            logger.info("Request %s cancelled during submission; cancelling %s", request_uuid, horde_id)
            try:
                await self.client.cancel(horde_id)
            except Exception:
                logger.exception("Could not cancel Horde job %s", horde_id)
            return

        self.active_requests[request_uuid] = horde_id
        self._requests.update(
            db,
            request_uuid,
            status=REQUEST_STATUS_PROCESSING,
            horde_request_id=horde_id,
            total_kudos_cost=response.get("kudos") or 0,
            message=f"Submitted to AI Horde (ID: {horde_id})",
        )
        logger.info("Submitted request %s to Horde (%s)", request_uuid, horde_id)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def check_active(self) -> None:
        """Poll the Horde once for every request with a known job id."""
        entries = [(u, h) for u, h in self.active_requests.items() if h != SUBMITTING]
        db = self._session_factory()
        try:
            for index, (request_uuid, horde_id) in enumerate(entries):
                if index and self.check_spacing > 0:
                    await self._sleep(self.check_spacing)
                if self.active_requests.get(request_uuid) != horde_id:
                    continue
                with log_context(request_uuid=request_uuid):
                    try:
                        await self._check_one(db, request_uuid, horde_id)
                    except Exception:
                        logger.exception("Unexpected error checking request %s", request_uuid)
        finally:
            db.close()

    async def _check_one(self, db: Session, request_uuid: str, horde_id: str) -> None:
        try:
            status = await self.client.check(horde_id)
        except Exception as exc:
            if is_not_found(exc):
                if self.active_requests.get(request_uuid) == horde_id:
                    del self.active_requests[request_uuid]
                    logger.info("Horde job %s not found on server, marking failed", horde_id)
                    self._requests.mark_failed(db, request_uuid, "Request not found on server")
            else:
                # Stays in-flight; the next pass retries
                logger.error("Error checking request %s: %s", horde_id, exc)
            return

        if self.active_requests.get(request_uuid) != horde_id:
            # Completed or cancelled by an overlapping call while we awaited
            return

        done = bool(status.get("done"))
        if done:
            del self.active_requests[request_uuid]

        queue_position = status.get("queue_position") or 0
        fields: dict[str, Any] = {
            "queue_position": queue_position,
            "wait_time": status.get("wait_time") or 0,
            "waiting": status.get("waiting") or 0,
            "processing": status.get("processing") or 0,
            "finished": status.get("finished") or 0,
            "message": (
                f"In queue (position: {queue_position})"
                if queue_position > 0
                else "Processing..."
            ),
        }
        if not done:
            started = fields["processing"] > 0 or fields["finished"] > 0
            fields["status"] = REQUEST_STATUS_PROCESSING if started else REQUEST_STATUS_WAITING
        self._requests.update(db, request_uuid, **fields)

        if done:
            await self.handle_completed(request_uuid, horde_id)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def handle_completed(self, request_uuid: str, horde_id: str) -> None:
        """Queue one pending download per usable result item."""
        db = self._session_factory()
        try:
            with log_context(request_uuid=request_uuid):
                result = await self.client.get_result(horde_id)
                generations = result.get("generations") or []
                if not generations:
                    self._requests.mark_completed(db, request_uuid, "No images generated")
                    return

                queued = censored = 0
                for generation in generations:
                    if generation.get("censored"):
                        censored += 1
                        continue
                    uri = generation.get("img")
                    if not uri:
                        logger.warning("Generation without image for %s", request_uuid)
                        continue
                    self._downloads.create(db, request_uuid, uri, generation)
                    queued += 1

                if queued == 0:
                    message = (
                        f"All {censored} images were censored" if censored else "No images generated"
                    )
                    self._requests.mark_completed(db, request_uuid, message)
                else:
                    self._requests.update(
                        db,
                        request_uuid,
                        status=REQUEST_STATUS_DOWNLOADING,
                        message=_downloading_message(queued, censored),
                    )
                logger.info(
                    "Request %s completed, %d images ready for download (%d censored)",
                    request_uuid,
                    queued,
                    censored,
                )
        except Exception:
            logger.exception("Error handling completed request %s", request_uuid)
            try:
                self._requests.mark_failed(db, request_uuid, "Error retrieving images")
            except Exception:
                logger.exception("Could not mark request %s as failed", request_uuid)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def process_downloads(self) -> None:
        """Fetch and store every pending download, one at a time."""
        if self.is_downloading:
            return
        self.is_downloading = True
        db = self._session_factory()
        try:
            batch = [
                (d.uuid, d.request_id, d.uri, d.full_response)
                for d in self._downloads.find_all(db)
                if d.uuid not in self.active_downloads
            ]
            for download_uuid, request_id, uri, full_response in batch:
                with log_context(request_uuid=request_id):
                    await self._process_download(db, download_uuid, request_id, uri, full_response)
        finally:
            db.close()
            self.is_downloading = False

    async def _process_download(
        self,
        db: Session,
        download_uuid: str,
        request_id: str,
        uri: str,
        full_response: dict | None,
    ) -> None:
        if download_uuid in self.active_downloads:
            return
        self.active_downloads.add(download_uuid)
        try:
            if not self._downloads.delete(db, download_uuid):
                return
            data = await self._fetch_bytes(uri)
            image_uuid = await self._materialize(db, request_id, full_response, data)
            logger.info("Downloaded and saved image %s", image_uuid)
        except Exception as exc:
            # The record is already gone: this image is dropped, not retried
            logger.error("Error downloading %s for request %s: %s", download_uuid, request_id, exc)
        finally:
            self.active_downloads.discard(download_uuid)

        try:
            self._complete_if_drained(db, request_id)
        except Exception:
            logger.exception("Could not update request %s after download", request_id)

    async def _fetch_bytes(self, uri: str) -> bytes:
        if uri.startswith(("http://", "https://")):
            return await self.client.download_image(uri)
        return _decode_inline_image(uri)

    async def _materialize(
        self,
        db: Session,
        request_id: str,
        full_response: dict | None,
        data: bytes,
    ) -> str:
        extension = extension_for(sniff_format(data))
        loop = asyncio.get_running_loop()
        thumbnail = await loop.run_in_executor(
            None,
            functools.partial(
                make_thumbnail,
                data,
                size=self.thumbnail_size,
                quality=self.thumbnail_quality,
            ),
        )

        image_uuid = str(uuid.uuid4())
        image_path = self.storage.store_image(image_uuid, extension, data)
        thumbnail_path = self.storage.store_thumbnail(image_uuid, thumbnail)

        try:
            self._images.create_image(
                db,
                image_uuid=image_uuid,
                request=self._requests.get(db, request_id),
                request_id=request_id,
                full_response=full_response,
                image_path=image_path,
                thumbnail_path=thumbnail_path,
            )
        except Exception:
            self.storage.delete(image_path)
            self.storage.delete(thumbnail_path)
            raise
        return image_uuid

    def _complete_if_drained(self, db: Session, request_id: str) -> None:
        if self._downloads.find_by_request(db, request_id):
            return
        request = self._requests.get(db, request_id)
        if request is not None and request.status == REQUEST_STATUS_DOWNLOADING:
            self._requests.mark_completed(db, request_id, "All images downloaded")
            logger.info("All downloads finished for request %s", request_id)

    # ------------------------------------------------------------------
    # Immediate-mode operations
    # ------------------------------------------------------------------

    def enqueue(self, params: dict, prompt: str | None = None) -> GenerationRequest:
        """Store a new pending request; the queue loop picks it up.

        Raises:
            ValueError: when ``params`` carries no prompt.
        """
        if not isinstance(params, dict) or not params.get("prompt"):
            raise ValueError("params must include a prompt")
        db = self._session_factory()
        try:
            return self._requests.create_request(db, params, prompt=prompt)
        finally:
            db.close()

    async def cancel(self, request_uuid: str) -> bool:
        """Stop tracking an in-flight request and cancel it on the Horde.

        Returns False when the request is not in flight.  A 404 from the
        Horde counts as success; other HTTP errors propagate.
        """
        horde_id = self.active_requests.pop(request_uuid, None)
        if horde_id is None:
            return False

        db = self._session_factory()
        try:
            self._requests.mark_cancelled(db, request_uuid)
        finally:
            db.close()

        if horde_id != SUBMITTING:
            await self.client.cancel(horde_id)
        logger.info("Cancelled request %s", request_uuid, extra={"horde_id": horde_id})
        return True

    async def estimate_kudos(self, params: dict) -> float:
        """Dry-run ``params`` against the Horde and return the kudos cost."""
        return await self.client.estimate_kudos(params)

    def get_status(self) -> dict[str, Any]:
        db = self._session_factory()
        try:
            return {
                "in_flight": len(self.active_requests),
                "ceiling": self.max_active_requests,
                "is_running": self.is_running,
                "pending_count": self._requests.count_by_status(db, REQUEST_STATUS_PENDING),
                "pending_download_count": self._downloads.count(db),
            }
        finally:
            db.close()
