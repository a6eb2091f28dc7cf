from __future__ import annotations

from fastapi import APIRouter, Depends

from mapxion.deps import get_lifecycle, get_submission_service
from mapxion.dispatch import SubmissionService
from mapxion.lifecycle import JobLifecycle
from mapxion.schemas import JobOut, JobUpdate, SubmitOut
from mapxion.models import Job


router = APIRouter(prefix="/jobs", tags=["jobs"])


def _job_to_out(job: Job) -> JobOut:
    return JobOut(
        id=job.id,
        status=job.status.value,
        photos_count=job.photos_count,
        price=float(job.price),
        progress=job.progress,
        message=job.message,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


@router.get("", response_model=list[JobOut])
def list_jobs(lifecycle: JobLifecycle = Depends(get_lifecycle)):
    return [_job_to_out(job) for job in lifecycle.list_recent(limit=50)]


@router.post("", response_model=JobOut)
def create_job(lifecycle: JobLifecycle = Depends(get_lifecycle)):
    return _job_to_out(lifecycle.create())


@router.get("/{job_id}", response_model=JobOut)
def get_job(job_id: str, lifecycle: JobLifecycle = Depends(get_lifecycle)):
    return _job_to_out(lifecycle.get(job_id))


@router.patch("/{job_id}", response_model=JobOut)
def update_job(job_id: str, patch: JobUpdate, lifecycle: JobLifecycle = Depends(get_lifecycle)):
    return _job_to_out(lifecycle.apply_update(job_id, patch))


@router.post("/{job_id}/submit", response_model=SubmitOut)
def submit_job(job_id: str, service: SubmissionService = Depends(get_submission_service)):
    result = service.submit(job_id)
    return SubmitOut(enqueued=result.enqueued, job_id=result.job_id, inputs=result.inputs, price=float(result.price))
