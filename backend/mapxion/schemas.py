from datetime import datetime
from pydantic import BaseModel, ConfigDict

from mapxion.models import JobStatus


class JobOut(BaseModel):
    id: str
    status: str
    photos_count: int
    price: float
    progress: int

    message: str | None = None
    error: str | None = None

    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class JobUpdate(BaseModel):
    """Status-update contract: any subset of the fields, absent means unchanged."""

    model_config = ConfigDict(extra="ignore")

    status: JobStatus | None = None
    progress: float | None = None
    message: str | None = None
    error: str | None = None


class UploadOut(BaseModel):
    job_id: str
    count: int
    saved: list[str]
    skipped: list[str]
    files: list[str]


class FilesOut(BaseModel):
    job_id: str
    count: int
    files: list[str]


class SubmitOut(BaseModel):
    enqueued: bool
    job_id: str
    inputs: int
    price: float


class OutputSavedOut(BaseModel):
    ok: bool = True
    job_id: str
    filename: str
    size_bytes: int


class ErrorOut(BaseModel):
    error: str
    message: str
