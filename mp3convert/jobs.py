# mp3convert/jobs.py
from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .config import OUTPUT_MIME
from .errors import ConversionError

LOGGER = logging.getLogger(__name__)

STDERR_TAIL = 2000


class JobStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class UploadedAsset:
    storage_path: Path
    assigned_name: str
    original_name: str
    mime_type: str


@dataclass
class ConvertedAsset:
    storage_path: Path
    file_name: str
    content_type: str = OUTPUT_MIME


@dataclass
class ConversionJob:
    upload: UploadedAsset
    output_path: Path
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    # ffmpeg writes here; moved onto output_path only after success
    work_path: Optional[Path] = None
    status: str = JobStatus.PENDING
    error: Optional[str] = None
    result: Optional[ConvertedAsset] = None

    @property
    def staging_path(self) -> Path:
        return self.work_path or self.output_path

    @property
    def done(self) -> bool:
        return self.status != JobStatus.PENDING

    def _settle(self, status: str) -> None:
        if self.done:
            raise RuntimeError(f"job {self.job_id} already {self.status}")
        self.status = status

    def mark_succeeded(self) -> ConvertedAsset:
        self._settle(JobStatus.SUCCEEDED)
        self.result = ConvertedAsset(storage_path=self.output_path, file_name=self.output_path.name)
        return self.result

    def mark_failed(self, reason: str) -> None:
        self._settle(JobStatus.FAILED)
        self.error = reason


def _preexec_ulimits():
    """
    Soft limits for the ffmpeg child: CPU time and open files.
    Skipped where the resource module is unavailable.
    """
    try:
        import resource

        resource.setrlimit(resource.RLIMIT_CPU, (1800, 1800))
        resource.setrlimit(resource.RLIMIT_NOFILE, (512, 512))
    except (ImportError, ValueError, OSError):
        pass


class JobRunner:
    """Runs ffmpeg for admitted uploads, at most ``max_concurrent`` at a time."""

    def __init__(self, ffmpeg: str, max_concurrent: int = 2, timeout: float = 600.0) -> None:
        self.ffmpeg = ffmpeg
        self.timeout = timeout
        self.max_concurrent = max(1, int(max_concurrent))
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self.in_flight = 0

    def build_command(self, src: Path, dst: Path) -> List[str]:
        return [
            self.ffmpeg,
            "-hide_banner",
            "-nostdin",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(src),
            "-vn",
            "-codec:a",
            "libmp3lame",
            "-q:a",
            "2",
            "-f",
            "mp3",
            str(dst),
        ]

    async def transcode(self, src: Path, dst: Path) -> None:
        cmd = self.build_command(src, dst)
        LOGGER.debug("Running %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                preexec_fn=_preexec_ulimits if os.name == "posix" else None,
            )
        except OSError as exc:
            raise ConversionError(f"could not start {self.ffmpeg}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5)
            except asyncio.TimeoutError:
                LOGGER.warning("ffmpeg pid %s did not exit after kill", proc.pid)
            raise ConversionError(f"ffmpeg timed out after {self.timeout:g}s")
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        if proc.returncode != 0:
            tail = (stderr or b"").decode("utf-8", "ignore").strip()[-STDERR_TAIL:]
            raise ConversionError(f"ffmpeg exited with {proc.returncode}: {tail or 'no output'}")

        if not dst.exists() or dst.stat().st_size <= 0:
            raise ConversionError("ffmpeg produced no output")

    def publish(self, job: ConversionJob) -> None:
        if job.staging_path == job.output_path:
            return
        try:
            os.replace(job.staging_path, job.output_path)
        except OSError as exc:
            raise ConversionError(f"could not move output into place: {exc}") from exc

    async def run(self, job: ConversionJob) -> ConversionJob:
        """Convert ``job.upload`` into ``job.output_path`` and settle the job once."""

        async with self._slots:
            self.in_flight += 1
            LOGGER.info(
                "Job %s started (%s -> %s, %d running)",
                job.job_id,
                job.upload.assigned_name,
                job.output_path.name,
                self.in_flight,
            )
            try:
                await self.transcode(job.upload.storage_path, job.staging_path)
                self.publish(job)
            except ConversionError as exc:
                job.mark_failed(exc.message)
            else:
                job.mark_succeeded()
            finally:
                self.in_flight -= 1
        LOGGER.info("Job %s %s", job.job_id, job.status)
        return job
