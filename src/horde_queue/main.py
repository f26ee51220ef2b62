import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

# Configure structured JSON logging as early as possible so every subsequent
# log record (including import-time warnings) uses the JSON formatter.
from horde_queue.config import settings
from horde_queue.logging_config import RequestIdMiddleware, configure_logging

configure_logging(level=settings.log_level)

from horde_queue.api.requests import router as requests_router  # noqa: E402
from horde_queue.database import init_db  # noqa: E402
from horde_queue.services.horde_client import HordeClient  # noqa: E402
from horde_queue.services.queue_manager import QueueManager  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up")
    init_db()
    logger.info("Database initialised")

    manager = getattr(app.state, "queue_manager", None)
    if manager is None:
        manager = QueueManager(HordeClient())
        app.state.queue_manager = manager
    manager.recover()
    manager.start()

    yield

    logger.info("Application shutting down")
    await manager.stop()


app = FastAPI(title="Horde Queue API", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.include_router(requests_router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_config=None)
