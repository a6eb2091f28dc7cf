from __future__ import annotations

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import FileResponse, StreamingResponse

from mapxion.archive import archive_members, stream_archive
from mapxion.deps import get_lifecycle
from mapxion.errors import ValidationError
from mapxion.lifecycle import JobLifecycle
from mapxion.schemas import FilesOut, OutputSavedOut, UploadOut
from mapxion.storage import IncomingFile
from mapxion.settings import settings


router = APIRouter(prefix="/jobs", tags=["files"])


def _zip_response(members, filename: str, label: str) -> StreamingResponse:
    return StreamingResponse(
        stream_archive(members, label=label),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/{job_id}/upload", response_model=UploadOut)
def upload_inputs(
    job_id: str,
    files: list[UploadFile] | None = File(None),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
):
    job = lifecycle.get(job_id)
    incoming = [IncomingFile(filename=f.filename, stream=f.file) for f in (files or [])]
    result = lifecycle.files.accept_upload(job.id, job.status, incoming)

    listing = lifecycle.files.list_inputs(job.id)
    return UploadOut(job_id=job.id, count=len(listing), saved=result.saved, skipped=result.skipped, files=listing)


@router.get("/{job_id}/files", response_model=FilesOut)
def list_inputs(job_id: str, lifecycle: JobLifecycle = Depends(get_lifecycle)):
    listing = lifecycle.files.list_inputs(job_id)
    return FilesOut(job_id=job_id, count=len(listing), files=listing)


@router.get("/{job_id}/input.zip")
def download_inputs(job_id: str, lifecycle: JobLifecycle = Depends(get_lifecycle)):
    members = archive_members(lifecycle.files.input_dir(job_id))
    return _zip_response(members, f"{settings.archive_prefix}-{job_id}-input.zip", label=f"{job_id}/input")


@router.post("/{job_id}/output", response_model=OutputSavedOut)
def upload_output(
    job_id: str,
    file: UploadFile | None = File(None),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
):
    job = lifecycle.get(job_id)
    if file is None:
        raise ValidationError("Missing file field.", code="missing_file")

    name, size = lifecycle.files.accept_output(job.id, IncomingFile(filename=file.filename, stream=file.file))
    return OutputSavedOut(job_id=job.id, filename=name, size_bytes=size)


@router.get("/{job_id}/outputs", response_model=FilesOut)
def list_outputs(job_id: str, lifecycle: JobLifecycle = Depends(get_lifecycle)):
    listing = lifecycle.files.list_outputs(job_id)
    return FilesOut(job_id=job_id, count=len(listing), files=listing)


@router.get("/{job_id}/outputs/{filename}")
def download_output_file(job_id: str, filename: str, lifecycle: JobLifecycle = Depends(get_lifecycle)):
    path = lifecycle.files.output_file(job_id, filename)
    return FileResponse(path, filename=path.name)


@router.get("/{job_id}/download")
def download_outputs(job_id: str, lifecycle: JobLifecycle = Depends(get_lifecycle)):
    members = archive_members(lifecycle.files.output_dir(job_id))
    return _zip_response(members, f"{settings.archive_prefix}-{job_id}.zip", label=f"{job_id}/output")
