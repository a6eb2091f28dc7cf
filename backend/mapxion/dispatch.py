from __future__ import annotations

import logging

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from mapxion.errors import ConflictError, ServiceUnavailableError, ValidationError
from mapxion.lifecycle import JobLifecycle, is_locked
from mapxion.models import JobStatus, utcnow
from mapxion.work_queue import DispatchMessage, RetryPolicy, WorkQueue


logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def compute_price(photos_count: int, price_per_unit: float) -> Decimal:
    return (Decimal(photos_count) * Decimal(str(price_per_unit))).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class SubmitResult:
    job_id: str
    inputs: int
    price: Decimal
    enqueued: bool = True


class SubmissionService:
    def __init__(
        self,
        lifecycle: JobLifecycle,
        queue: WorkQueue,
        price_per_unit: float,
        retry_policy: RetryPolicy,
    ) -> None:
        self.lifecycle = lifecycle
        self.queue = queue
        self.price_per_unit = price_per_unit
        self.retry_policy = retry_policy

    def submit(self, job_id: str) -> SubmitResult:
        db = self.lifecycle.db
        job = self.lifecycle.get(job_id)

        if is_locked(job.status):
            raise ConflictError(f"Job is {job.status.value}; it cannot be submitted again.", code="job_locked")

        if not self.queue.is_ready():
            raise ServiceUnavailableError("Work queue is unavailable; retry later.", code="queue_unavailable")

        inputs = self.lifecycle.files.list_inputs(job_id)
        now = utcnow()

        if not inputs:
            job.status = JobStatus.failed
            job.photos_count = 0
            job.price = Decimal("0.00")
            job.error = "no_input_files"
            job.message = "No input files uploaded"
            job.updated_at = now
            if job.finished_at is None:
                job.finished_at = now
            db.commit()
            logger.info("job %s failed on submit: no input files", job_id)
            raise ValidationError("Upload at least one photo before submitting.", code="no_input_files")

        price = compute_price(len(inputs), self.price_per_unit)
        job.status = JobStatus.queued
        job.photos_count = len(inputs)
        job.price = price
        job.progress = 0
        job.message = None
        job.error = None
        job.updated_at = now
        db.commit()
        self.lifecycle.files.clear_outputs(job_id)

        try:
            self.queue.publish(DispatchMessage(job_id=job_id), self.retry_policy)
        except Exception as exc:
            # The row already says queued; an operator has to republish or reset it.
            logger.error("job %s queued but dispatch failed, needs reconciliation: %s", job_id, exc)
            raise ServiceUnavailableError(
                "Job was queued but could not be dispatched.", code="queue_publish_failed"
            ) from exc

        logger.info("job %s submitted: %d photo(s), price %s", job_id, len(inputs), price)
        return SubmitResult(job_id=job_id, inputs=len(inputs), price=price)
