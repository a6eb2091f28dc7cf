from fastapi import Depends, Request
from sqlalchemy.orm import Session

from mapxion.dispatch import SubmissionService
from mapxion.lifecycle import JobLifecycle
from mapxion.storage import FileAreaManager
from mapxion.work_queue import WorkQueue, retry_policy_from_settings
from mapxion.settings import settings
from mapxion.db import get_db


def get_file_area() -> FileAreaManager:
    return FileAreaManager(
        settings.jobs_dir,
        allowed_extensions=settings.allowed_image_extensions,
        max_upload_bytes=settings.max_upload_bytes,
    )


def get_lifecycle(
    db: Session = Depends(get_db),
    files: FileAreaManager = Depends(get_file_area),
) -> JobLifecycle:
    return JobLifecycle(db, files)


def get_work_queue(request: Request) -> WorkQueue:
    return request.app.state.work_queue


def get_submission_service(
    lifecycle: JobLifecycle = Depends(get_lifecycle),
    queue: WorkQueue = Depends(get_work_queue),
) -> SubmissionService:
    return SubmissionService(
        lifecycle,
        queue,
        price_per_unit=settings.price_per_unit,
        retry_policy=retry_policy_from_settings(settings),
    )
