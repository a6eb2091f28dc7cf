from __future__ import annotations

import logging

from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mapxion.errors import ConflictError, InternalError, NotFoundError, ValidationError
from mapxion.models import Job, JobStatus, utcnow

if TYPE_CHECKING:
    from mapxion.schemas import JobUpdate
    from mapxion.storage import FileAreaManager


logger = logging.getLogger(__name__)

LOCKED_STATUSES = frozenset({JobStatus.queued, JobStatus.running, JobStatus.done})
TERMINAL_STATUSES = frozenset({JobStatus.done, JobStatus.failed})

# Status changes a worker may report. ``queued`` is entered only through submit.
WORKER_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.created: frozenset({JobStatus.failed}),
    JobStatus.queued: frozenset({JobStatus.running, JobStatus.failed}),
    JobStatus.running: frozenset({JobStatus.running, JobStatus.done, JobStatus.failed}),
    JobStatus.failed: frozenset({JobStatus.running, JobStatus.failed}),
    JobStatus.done: frozenset({JobStatus.done}),
}


def is_locked(status: JobStatus) -> bool:
    return status in LOCKED_STATUSES


class JobLifecycle:
    def __init__(self, db: Session, files: FileAreaManager) -> None:
        self.db = db
        self.files = files

    def create(self) -> Job:
        now = utcnow()
        job = Job(
            status=JobStatus.created,
            photos_count=0,
            price=0,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.add(job)
            self.db.commit()
            self.db.refresh(job)
            self.files.ensure(job.id)
        except (SQLAlchemyError, OSError) as exc:
            self.db.rollback()
            logger.error("could not create job: %s", exc)
            raise InternalError("Could not create job.", code="storage_error") from exc

        logger.info("job %s created", job.id)
        return job

    def get(self, job_id: str, *, for_update: bool = False) -> Job:
        stmt = select(Job).where(Job.id == job_id)
        if for_update:
            stmt = stmt.with_for_update()
        job = self.db.execute(stmt).scalar_one_or_none()
        if job is None:
            raise NotFoundError("Job not found")
        return job

    def list_recent(self, limit: int = 50) -> list[Job]:
        stmt = select(Job).order_by(Job.created_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars())

    def apply_update(self, job_id: str, patch: JobUpdate) -> Job:
        """Apply a partial status update; absent fields keep their value.

        ``progress`` is validated before anything is touched so a rejected
        update leaves the row as it was. Within a run progress only moves
        forward: a lower value than the stored one is ignored.
        """
        progress = None
        if patch.progress is not None:
            if not 0 <= patch.progress <= 100:
                raise ValidationError("progress must be between 0 and 100", code="invalid_progress")
            progress = int(patch.progress)

        job = self.get(job_id, for_update=True)

        if patch.status is not None and patch.status != job.status:
            allowed = WORKER_TRANSITIONS.get(job.status, frozenset())
            if patch.status not in allowed:
                self.db.rollback()
                raise ConflictError(
                    f"Cannot move job from {job.status.value} to {patch.status.value}",
                    code="invalid_transition",
                )

        now = utcnow()
        fresh_attempt = job.status == JobStatus.failed and patch.status == JobStatus.running
        if patch.status is not None:
            job.status = patch.status
            if fresh_attempt:
                # A redelivered attempt starts over; the previous failure no longer applies.
                job.error = None
            if patch.status == JobStatus.running and job.started_at is None:
                job.started_at = now
            if patch.status in TERMINAL_STATUSES and job.finished_at is None:
                job.finished_at = now
        if progress is not None:
            job.progress = max(job.progress, progress)
        if patch.message is not None:
            job.message = patch.message
        if patch.error is not None:
            job.error = patch.error
        job.updated_at = now

        self.db.commit()
        self.db.refresh(job)

        if fresh_attempt:
            self.files.clear_outputs(job.id)
        logger.debug("job %s updated: status=%s progress=%s", job.id, job.status.value, job.progress)
        return job
