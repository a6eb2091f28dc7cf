from __future__ import annotations

import logging
import re
import uuid

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterable

from mapxion.errors import ConflictError, InternalError, NotFoundError, PayloadTooLargeError, ValidationError
from mapxion.lifecycle import is_locked
from mapxion.models import JobStatus


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._()\- ]")


def sanitize_filename(name: str | None) -> str:
    """Reduce a client-supplied name to a flat, filesystem-safe file name."""
    base = PurePosixPath((name or "").replace("\\", "/")).name
    safe = _UNSAFE_CHARS.sub("_", base).strip()
    if safe in ("", ".", ".."):
        return "file"
    return safe


@dataclass
class IncomingFile:
    filename: str | None
    stream: BinaryIO


@dataclass
class UploadResult:
    saved: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class FileAreaManager:
    """Per-job input/output directories under ``<root>/<job_id>``."""

    def __init__(self, root: Path, allowed_extensions: Iterable[str], max_upload_bytes: int) -> None:
        self.root = root
        self.allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)
        self.max_upload_bytes = max_upload_bytes

    def job_dir(self, job_id: str) -> Path:
        return self.root / job_id

    def input_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / "input"

    def output_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / "output"

    def ensure(self, job_id: str) -> None:
        self.input_dir(job_id).mkdir(parents=True, exist_ok=True)
        self.output_dir(job_id).mkdir(parents=True, exist_ok=True)

    def is_image(self, name: str) -> bool:
        return Path(name).suffix.lower() in self.allowed_extensions

    def list_inputs(self, job_id: str) -> list[str]:
        folder = self.input_dir(job_id)
        if not folder.is_dir():
            return []
        return sorted(p.name for p in folder.iterdir() if p.is_file() and self.is_image(p.name))

    def list_outputs(self, job_id: str) -> list[str]:
        folder = self.output_dir(job_id)
        if not folder.is_dir():
            return []
        return sorted(p.name for p in folder.iterdir() if p.is_file())

    def clear_outputs(self, job_id: str) -> int:
        """Remove every artifact of a previous run; returns how many were removed."""
        folder = self.output_dir(job_id)
        if not folder.is_dir():
            return 0
        removed = 0
        for path in folder.iterdir():
            if path.is_file():
                path.unlink()
                removed += 1
        if removed:
            logger.info("job %s: cleared %d output file(s)", job_id, removed)
        return removed

    def accept_upload(self, job_id: str, status: JobStatus, files: list[IncomingFile]) -> UploadResult:
        if is_locked(status):
            raise ConflictError(f"Job is {status.value}; uploads are closed.", code="job_locked")
        if not files:
            raise ValidationError("No files in request.", code="no_files")

        folder = self.input_dir(job_id)
        folder.mkdir(parents=True, exist_ok=True)

        result = UploadResult()
        for incoming in files:
            name = sanitize_filename(incoming.filename)
            if not self.is_image(name):
                result.skipped.append(name)
                continue
            self._write(incoming.stream, folder / name)
            result.saved.append(name)

        logger.info("job %s: stored %d input file(s), skipped %d", job_id, len(result.saved), len(result.skipped))
        return result

    def accept_output(self, job_id: str, incoming: IncomingFile) -> tuple[str, int]:
        folder = self.output_dir(job_id)
        folder.mkdir(parents=True, exist_ok=True)
        name = sanitize_filename(incoming.filename)
        size = self._write(incoming.stream, folder / name)
        logger.info("job %s: stored output %s (%d bytes)", job_id, name, size)
        return name, size

    def output_file(self, job_id: str, filename: str) -> Path:
        path = self.output_dir(job_id) / sanitize_filename(filename)
        if not path.is_file():
            raise NotFoundError("Output file not found.")
        return path

    def _write(self, src: BinaryIO, dest_path: Path) -> int:
        # Staged in the job dir, outside input/ and output/, so listings never see it.
        tmp_path = dest_path.parent.parent / f".{uuid.uuid4().hex}.upload"
        size = 0
        try:
            with tmp_path.open("wb") as f:
                while True:
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_upload_bytes:
                        raise PayloadTooLargeError(
                            f"File too large (max {self.max_upload_bytes} bytes).",
                        )
                    f.write(chunk)
            tmp_path.replace(dest_path)
        except PayloadTooLargeError:
            tmp_path.unlink(missing_ok=True)
            raise
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            logger.error("could not write %s: %s", dest_path, exc)
            raise InternalError("Could not store file.", code="storage_error") from exc

        return size
