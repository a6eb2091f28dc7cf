from __future__ import annotations

import json
import logging
import math
import tempfile
import time
import traceback
import zipfile

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from PIL import Image

from mapxion.archive import write_archive
from mapxion_worker.client import ApiClient


logger = logging.getLogger(__name__)

THUMB_SIZE = 256


@dataclass
class Photo:
    name: str
    path: Path
    width: int
    height: int
    format: str | None


@dataclass
class RunContext:
    job_id: str
    work_dir: Path
    photos: list[Photo] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def input_dir(self) -> Path:
        return self.work_dir / "input"

    @property
    def output_dir(self) -> Path:
        return self.work_dir / "output"


class JobRunner:
    """Runs one job end to end and reports progress through the API.

    The processing itself is a placeholder: it reads the photos, writes a
    camera listing, a preview contact sheet, a manifest and a zip of all of
    it. Each stage is announced before it runs so progress only moves forward.
    """

    def __init__(
        self,
        client: ApiClient,
        archive_prefix: str = "mapxion",
        stage_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.archive_prefix = archive_prefix
        self.stage_delay = stage_delay
        self.sleep = sleep
        self.stages: list[tuple[int, str, Callable[[RunContext], None]]] = [
            (20, "Importing photos", self._import_photos),
            (45, "Aligning cameras", self._align_cameras),
            (70, "Generating point cloud / mesh", self._build_preview),
            (90, "Exporting outputs", self._export_outputs),
        ]

    def run(self, job_id: str) -> bool:
        """Process ``job_id``; returns False when the job was already done."""
        job = self.client.get_job(job_id)
        if job["status"] == "done":
            logger.info("job %s already done, ignoring duplicate delivery", job_id)
            return False

        with tempfile.TemporaryDirectory(prefix=f"mapxion-{job_id}-") as tmp:
            ctx = RunContext(job_id=job_id, work_dir=Path(tmp))
            ctx.input_dir.mkdir()
            ctx.output_dir.mkdir()
            try:
                self._report(job_id, status="running", progress=5, message="Starting")
                for progress, message, stage in self.stages:
                    self._report(job_id, progress=progress, message=message)
                    t0 = time.perf_counter()
                    stage(ctx)
                    ctx.timings[stage.__name__.lstrip("_")] = (time.perf_counter() - t0) * 1000.0
                self._report(job_id, status="done", progress=100, message="Completed")
            except Exception as exc:
                self._record_failure(ctx, exc)
                raise

        logger.info("job %s completed", job_id)
        return True

    def _report(self, job_id: str, **fields) -> None:
        self.client.patch_job(job_id, **fields)
        if self.stage_delay and fields.get("status") != "done":
            self.sleep(self.stage_delay)

    def _import_photos(self, ctx: RunContext) -> None:
        archive = self.client.download_inputs(ctx.job_id, ctx.work_dir / "input.zip")
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                name = Path(info.filename).name
                if info.is_dir() or not name:
                    continue
                (ctx.input_dir / name).write_bytes(zf.read(info))
        archive.unlink()

        for path in sorted(ctx.input_dir.iterdir()):
            with Image.open(path) as im:
                width, height = im.size
                ctx.photos.append(Photo(name=path.name, path=path, width=width, height=height, format=im.format))

        if not ctx.photos:
            raise RuntimeError("input archive contained no photos")

    def _align_cameras(self, ctx: RunContext) -> None:
        cameras = [
            {
                "index": i,
                "photo": photo.name,
                "width": photo.width,
                "height": photo.height,
                "rotation": [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]],
                "translation": [float(i), 0.0, 0.0],
            }
            for i, photo in enumerate(ctx.photos)
        ]
        (ctx.output_dir / "cameras.json").write_text(json.dumps({"cameras": cameras}, indent=2), encoding="utf-8")

    def _build_preview(self, ctx: RunContext) -> None:
        columns = min(len(ctx.photos), 4)
        rows = math.ceil(len(ctx.photos) / columns)
        sheet = Image.new("RGB", (columns * THUMB_SIZE, rows * THUMB_SIZE), (32, 32, 32))

        for i, photo in enumerate(ctx.photos):
            with Image.open(photo.path) as im:
                thumb = im.convert("RGB")
                thumb.thumbnail((THUMB_SIZE, THUMB_SIZE))
            x = (i % columns) * THUMB_SIZE + (THUMB_SIZE - thumb.width) // 2
            y = (i // columns) * THUMB_SIZE + (THUMB_SIZE - thumb.height) // 2
            sheet.paste(thumb, (x, y))

        sheet.save(ctx.output_dir / "preview.jpg", format="JPEG", quality=90)

    def _export_outputs(self, ctx: RunContext) -> None:
        manifest = {
            "meta": {
                "job_id": ctx.job_id,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "photos_count": len(ctx.photos),
            },
            "runtime": {"stages_ms": ctx.timings},
            "photos": [
                {"name": p.name, "width": p.width, "height": p.height, "format": p.format} for p in ctx.photos
            ],
        }
        (ctx.output_dir / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")

        bundle = ctx.work_dir / f"{self.archive_prefix}-{ctx.job_id}.zip"
        write_archive(ctx.output_dir, bundle)
        bundle.replace(ctx.output_dir / bundle.name)

        for path in sorted(ctx.output_dir.iterdir()):
            self.client.upload_output(ctx.job_id, path)

    def _record_failure(self, ctx: RunContext, exc: Exception) -> None:
        logger.error("job %s failed: %s", ctx.job_id, exc)
        error_text = f"{type(exc).__name__}: {exc}"

        try:
            artifact = ctx.output_dir / "error.txt"
            artifact.write_text(
                "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), encoding="utf-8"
            )
            self.client.upload_output(ctx.job_id, artifact)
        except Exception as upload_exc:
            logger.warning("job %s: could not store error artifact: %s", ctx.job_id, upload_exc)

        try:
            self.client.patch_job(ctx.job_id, status="failed", error=error_text, message="Failed")
        except Exception as patch_exc:
            logger.warning("job %s: could not report failure: %s", ctx.job_id, patch_exc)
