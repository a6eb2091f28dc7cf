from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MAPXION_WORKER_", env_file=".env", extra="ignore")

    # Both are required: the worker cannot do anything without the API and the broker.
    api_base: str
    broker_url: str

    queue_name: str = "processQueue"
    concurrency: int = 1

    stage_delay_seconds: float = 1.5
    archive_prefix: str = "mapxion"
    http_timeout: float = 60.0

    log_level: str = "INFO"
