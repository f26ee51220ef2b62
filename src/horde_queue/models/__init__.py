from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Import all models so that Base.metadata.create_all picks them up.
from horde_queue.models.request import GenerationRequest  # noqa: E402, F401
from horde_queue.models.pending_download import PendingDownload  # noqa: E402, F401
from horde_queue.models.image import GeneratedImage  # noqa: E402, F401
