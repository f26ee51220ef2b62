"""Tests for RequestService and the pending-download / image services."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from horde_queue.models import Base
from horde_queue.models.image import GeneratedImage
from horde_queue.models.pending_download import PendingDownload
from horde_queue.models.request import (
    GenerationRequest,
    REQUEST_STATUS_CANCELLED,
    REQUEST_STATUS_COMPLETED,
    REQUEST_STATUS_FAILED,
    REQUEST_STATUS_PENDING,
    REQUEST_STATUS_PROCESSING,
)
from horde_queue.services.download_service import (
    GeneratedImageService,
    PendingDownloadService,
)
from horde_queue.services.request_service import RequestService, simple_prompt


def _make_db():
    """Create an isolated in-memory SQLite DB and return a session."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)()


@pytest.fixture
def db():
    session = _make_db()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# RequestService
# ---------------------------------------------------------------------------


def test_simple_prompt_drops_negative_part():
    assert simple_prompt({"prompt": "a red barn ### blurry, lowres"}) == "a red barn"
    assert simple_prompt({"prompt": "no negatives"}) == "no negatives"
    assert simple_prompt({}) == ""


def test_create_request_starts_pending(db):
    svc = RequestService()
    params = {"prompt": "castle at dusk###fog", "params": {"n": 4}}

    request = svc.create_request(db, params)

    assert request.status == REQUEST_STATUS_PENDING
    assert request.prompt == "castle at dusk"
    assert request.n == 4
    assert request.full_request == params
    assert request.horde_request_id is None


def test_create_request_defaults_n_to_one_and_accepts_explicit_prompt(db):
    svc = RequestService()

    request = svc.create_request(db, {"prompt": "x"}, prompt="display prompt")

    assert request.n == 1
    assert request.prompt == "display prompt"


def test_status_helpers(db):
    svc = RequestService()
    a = svc.create_request(db, {"prompt": "a"})
    b = svc.create_request(db, {"prompt": "b"})
    c = svc.create_request(db, {"prompt": "c"})

    svc.mark_failed(db, a.uuid, "Invalid API key")
    svc.mark_completed(db, b.uuid, "All images downloaded")
    svc.mark_cancelled(db, c.uuid)

    assert svc.get(db, a.uuid).status == REQUEST_STATUS_FAILED
    assert svc.get(db, a.uuid).message == "Invalid API key"
    assert svc.get(db, b.uuid).status == REQUEST_STATUS_COMPLETED
    assert svc.get(db, c.uuid).status == REQUEST_STATUS_CANCELLED


def test_update_missing_request_returns_none(db):
    assert RequestService().update(db, "nope", status=REQUEST_STATUS_FAILED) is None


def test_list_by_status_is_oldest_first_with_limit_and_exclude(db):
    base = datetime(2024, 1, 1, 12, 0, 0)
    for i, uid in enumerate(["r3", "r1", "r2"]):
        db.add(
            GenerationRequest(
                uuid=uid,
                prompt=uid,
                full_request={"prompt": uid},
                status=REQUEST_STATUS_PENDING,
                date_created=base + timedelta(minutes={"r1": 1, "r2": 2, "r3": 3}[uid]),
            )
        )
    db.add(GenerationRequest(uuid="busy", status=REQUEST_STATUS_PROCESSING, date_created=base))
    db.commit()
    svc = RequestService()

    assert [r.uuid for r in svc.list_by_status(db, [REQUEST_STATUS_PENDING])] == ["r1", "r2", "r3"]
    assert [r.uuid for r in svc.list_by_status(db, [REQUEST_STATUS_PENDING], limit=2)] == ["r1", "r2"]
    assert [
        r.uuid for r in svc.list_by_status(db, [REQUEST_STATUS_PENDING], limit=2, exclude=["r1"])
    ] == ["r2", "r3"]
    assert svc.count_by_status(db, REQUEST_STATUS_PENDING) == 3


# ---------------------------------------------------------------------------
# PendingDownloadService
# ---------------------------------------------------------------------------


def test_pending_download_create_is_idempotent(db):
    request = RequestService().create_request(db, {"prompt": "p"})
    svc = PendingDownloadService()

    records = [
        svc.create(db, request.uuid, "https://r2.test/a.webp", {"seed": "1"}) for _ in range(4)
    ]

    assert len({r.uuid for r in records}) == 1
    assert svc.count(db) == 1
    assert len(svc.find_by_request(db, request.uuid)) == 1


def test_pending_download_distinct_uris_are_separate(db):
    request = RequestService().create_request(db, {"prompt": "p"})
    svc = PendingDownloadService()

    svc.create(db, request.uuid, "https://r2.test/a.webp")
    svc.create(db, request.uuid, "https://r2.test/b.webp")

    assert svc.count(db) == 2
    assert [d.uri for d in svc.find_all(db)] == ["https://r2.test/a.webp", "https://r2.test/b.webp"]


def test_pending_download_create_recovers_from_unique_violation(db, monkeypatch):
    """A concurrent writer that wins the insert race yields its record."""
    request = RequestService().create_request(db, {"prompt": "p"})
    svc = PendingDownloadService()
    winner = PendingDownload(uuid="winner", request_id=request.uuid, uri="https://r2.test/a.webp")
    db.add(winner)
    db.commit()

    # Pretend the pre-check missed the row, as it would under a real race
    real_find = svc.find_by_request_and_uri
    calls = {"n": 0}

    def racing_find(session, request_id, uri):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(session, request_id, uri)

    monkeypatch.setattr(svc, "find_by_request_and_uri", racing_find)

    record = svc.create(db, request.uuid, "https://r2.test/a.webp")

    assert record.uuid == "winner"
    assert svc.count(db) == 1


def test_pending_download_delete_reports_whether_it_deleted(db):
    request = RequestService().create_request(db, {"prompt": "p"})
    svc = PendingDownloadService()
    record = svc.create(db, request.uuid, "https://r2.test/a.webp")
    record_uuid = record.uuid

    assert svc.delete(db, record_uuid) is True
    assert svc.delete(db, record_uuid) is False
    assert svc.count(db) == 0


# ---------------------------------------------------------------------------
# GeneratedImageService
# ---------------------------------------------------------------------------


def test_create_image_copies_prompt_and_request(db):
    params = {"prompt": "a cat ### dog", "params": {"n": 1}}
    request = RequestService().create_request(db, params)
    svc = GeneratedImageService()

    image = svc.create_image(
        db,
        image_uuid="img-1",
        request=request,
        request_id=request.uuid,
        full_response={"seed": "42"},
        image_path="img-1.webp",
        thumbnail_path="img-1_thumb.jpg",
    )

    assert image.prompt_simple == "a cat"
    assert image.full_request == params
    assert image.full_response == {"seed": "42"}
    assert image.backend == "AI Horde"
    assert db.get(GeneratedImage, "img-1").request_id == request.uuid
