from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MAPXION_", env_file=".env", extra="ignore")

    backend_dir: Path = Path(__file__).resolve().parents[1]
    data_dir: Path = backend_dir / "data"

    database_url: str = f"sqlite:///{(data_dir / 'app.db').as_posix()}"

    # Unset means no queue is configured; submissions answer 503 until one is.
    broker_url: str | None = None
    queue_name: str = "processQueue"
    broker_check_interval: float = 5.0

    retry_max_attempts: int = 3
    retry_base_delay: float = 5.0

    price_per_unit: float = 0.07
    archive_prefix: str = "mapxion"

    max_upload_bytes: int = 100 * 1024 * 1024
    allowed_image_extensions: tuple[str, ...] = (
        ".jpg",
        ".jpeg",
        ".png",
        ".webp",
        ".tif",
        ".tiff",
    )

    cors_allow_origins: tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")

    log_level: str = "INFO"

    @property
    def jobs_dir(self) -> Path:
        return self.data_dir / "jobs"


settings = Settings()
