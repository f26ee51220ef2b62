from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # AI Horde (anonymous key when unset)
    horde_api_key: str = "0000000000"
    horde_api_base: str = "https://aihorde.net/api/v2"
    client_agent: str = "horde-queue:1.0.0:github.com/amiantos/aislingeach-web"
    # Seconds to wait on a single Horde HTTP call before giving up
    http_timeout: float = 60.0

    # Database
    database_url: str = "sqlite:///./horde_queue.db"

    # Generated images and thumbnails are written under {storage_path}/images
    storage_path: str = "./storage"

    # Scheduling
    max_active_requests: int = 5
    # Minimum seconds between two calls on the same throttle queue
    min_api_interval: float = 1.0
    # Cadence of the submit + poll loop and of the download loop
    queue_interval: float = 2.0
    download_interval: float = 1.0
    # Pause between two status checks inside one polling pass
    check_spacing: float = 0.5

    # Thumbnails
    thumbnail_size: int = 512
    thumbnail_quality: int = 85

    log_level: str = "INFO"

    model_config = {"env_file": ".env"}


settings = Settings()
