"""Structured JSON logging configuration for the Horde queue service.

Call ``configure_logging()`` once at application startup (in lifespan).
After that, every ``logging.getLogger(__name__)`` call produces structured
JSON lines on stdout.

Fields bound with ``log_context()`` are attached to every record emitted in
the same async context.  The queue manager binds ``request_uuid`` while it
works on a generation request; ``RequestIdMiddleware`` binds
``http_request_id`` for the duration of an HTTP call.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Iterator

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# ── Context variable ──────────────────────────────────────────────────────────
_log_context_var: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def get_log_context() -> dict[str, Any]:
    """Return the fields bound in the current async context."""
    return _log_context_var.get()


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind ``fields`` to every log record emitted inside the block.

    Nested blocks merge with (and may override) the outer fields.
    """
    token = _log_context_var.set({**_log_context_var.get(), **fields})
    try:
        yield
    finally:
        _log_context_var.reset(token)


# ── JSON log formatter ────────────────────────────────────────────────────────


# Attributes every LogRecord carries; anything else arrived via ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}


class _JsonFormatter(logging.Formatter):
    """One JSON object per line: level, logger, message, bound context, extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **get_log_context(),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


# ── Public configuration entry-point ─────────────────────────────────────────


def configure_logging(level: str = "INFO") -> None:
    """Replace the root logger's handlers with a single JSON-to-stdout handler.

    Args:
        level: Logging level string, e.g. ``"INFO"``, ``"DEBUG"``, ``"WARNING"``.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # httpx logs every Horde poll at INFO
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Structured JSON logging initialised",
        extra={"log_level": level.upper()},
    )


# ── Request ID middleware ─────────────────────────────────────────────────────


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every HTTP request with an ``X-Request-ID`` and log its outcome.

    The ID comes from the incoming header when present, otherwise a fresh
    UUID4 hex.  It is bound as ``http_request_id`` for the whole call.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self._header_name) or uuid.uuid4().hex
        start = time.monotonic()

        with log_context(http_request_id=request_id):
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 1)
            response.headers[self._header_name] = request_id
            logging.getLogger("horde_queue.access").info(
                "%s %s %s",
                request.method,
                request.url.path,
                response.status_code,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )

        return response
