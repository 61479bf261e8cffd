# mp3convert/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Optional
from urllib.parse import quote

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from . import quota
from .config import (
    ALLOWED_MIME,
    ALLOWED_ORIGINS,
    DAILY_LIMIT,
    FFMPEG,
    JOB_TIMEOUT_SEC,
    MAX_CONCURRENT_JOBS,
    MAX_SIZE_MB,
    OUTPUT_DIR,
    OUTPUT_EXT,
    OUTPUT_MIME,
    PUBLIC_BASE_URL,
    QUOTA_FILE,
    RETENTION_SEC,
    UPLOAD_DIR,
    ensure_dirs,
)
from .errors import AdmissionError, DownloadNotFound, OriginError, QuotaExceeded, ServiceError
from .jobs import ConversionJob, JobRunner, JobStatus, UploadedAsset
from .naming import (
    assign_upload_name,
    derive_output_name,
    release_output_path,
    reserve_output_path,
    resolve_download,
)
from .scheduler import ExpiryScheduler

LOGGER = logging.getLogger(__name__)

ensure_dirs(UPLOAD_DIR, OUTPUT_DIR)

# Shared state; tests swap these for fakes.
QUOTA: quota.QuotaStore = quota.JsonQuotaStore(QUOTA_FILE)
RUNNER = JobRunner(FFMPEG, max_concurrent=MAX_CONCURRENT_JOBS, timeout=JOB_TIMEOUT_SEC)
SCHEDULER = ExpiryScheduler()

CHUNK_SIZE = 1024 * 1024
QUOTA_MESSAGE = f"You've hit {DAILY_LIMIT} free conversions today. Please upgrade to Pro."
FAILURE_MESSAGE = "Conversion failed. Try again later."


@asynccontextmanager
async def lifespan(app):
    ensure_dirs(UPLOAD_DIR, OUTPUT_DIR)
    QUOTA.ensure()
    SCHEDULER.start()
    LOGGER.info(
        "Ready: uploads=%s converted=%s limit=%d/day retention=%gs",
        UPLOAD_DIR,
        OUTPUT_DIR,
        DAILY_LIMIT,
        RETENTION_SEC,
    )
    yield
    await SCHEDULER.stop()


# ------------ App ------------
app = FastAPI(lifespan=lifespan)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


def origin_allowed(origin: Optional[str]) -> bool:
    if not origin or "*" in ALLOWED_ORIGINS:
        return True
    return origin.rstrip("/") in {o.rstrip("/") for o in ALLOWED_ORIGINS}


@app.middleware("http")
async def origin_filter(request: Request, call_next):
    origin = request.headers.get("origin")
    if not origin_allowed(origin):
        LOGGER.warning("Rejected request from origin %s to %s", origin, request.url.path)
        err = OriginError("Origin not allowed")
        return JSONResponse({"error": err.message}, status_code=err.status_code)
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    resp = await call_next(request)
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["Referrer-Policy"] = "no-referrer"
    return resp


# Added last so it wraps the origin filter and answers preflights itself.
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# The converted directory is also served as plain static files.
app.mount("/media", StaticFiles(directory=str(OUTPUT_DIR)), name="media")


# ------------ Helpers ------------
async def save_upload(file: UploadFile, dest: Path) -> int:
    max_bytes = int(MAX_SIZE_MB * 1024 * 1024)
    written = 0
    try:
        with dest.open("wb") as f:
            while True:
                chunk = await file.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise AdmissionError(f"File exceeds {MAX_SIZE_MB:g}MB limit")
                f.write(chunk)
    except BaseException:
        discard(dest)
        raise
    return written


def download_url(request: Request, file_name: str) -> str:
    base = PUBLIC_BASE_URL or str(request.base_url).rstrip("/")
    return f"{base}/download/{quote(file_name)}"


def content_disposition(file_name: str) -> str:
    fallback = "".join(c for c in file_name if " " <= c <= "~") or "audio.mp3"
    escaped = fallback.replace("\\", "\\\\").replace('"', '\\"')
    value = f'attachment; filename="{escaped}"'
    if fallback != file_name:
        value += f"; filename*=UTF-8''{quote(file_name, safe='')}"
    return value


def iter_file(fh: BinaryIO) -> Iterator[bytes]:
    with fh:
        while True:
            chunk = fh.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


def discard(*paths: Path) -> None:
    for p in paths:
        try:
            p.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.error("Could not remove %s: %s", p, exc)


# ------------ Views ------------
@app.get("/", response_class=PlainTextResponse)
def index():
    return "MP4 to MP3 backend is live!"


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/convert")
async def convert(request: Request, file: UploadFile = File(...)):
    if not file.filename:
        raise AdmissionError("Missing filename")
    if (file.content_type or "").lower() != ALLOWED_MIME:
        raise AdmissionError("Only .mp4 files are allowed!")

    record = quota.refresh(QUOTA)
    if quota.is_exhausted(record, DAILY_LIMIT):
        LOGGER.info("Refused %s: daily limit reached (%d)", file.filename, record.count)
        raise QuotaExceeded(QUOTA_MESSAGE)

    assigned = assign_upload_name(file.filename)
    src_path = UPLOAD_DIR / assigned
    await save_upload(file, src_path)
    upload = UploadedAsset(
        storage_path=src_path,
        assigned_name=assigned,
        original_name=file.filename,
        mime_type=file.content_type,
    )

    try:
        out_path = reserve_output_path(OUTPUT_DIR, derive_output_name(file.filename))
    except BaseException:
        discard(src_path)
        raise
    work_path = UPLOAD_DIR / f"{src_path.stem}{OUTPUT_EXT}.part"
    job = ConversionJob(upload=upload, output_path=out_path, work_path=work_path)
    try:
        await RUNNER.run(job)
    except Exception as exc:
        LOGGER.exception("Runner crashed on job %s", job.job_id)
        if not job.done:
            job.mark_failed(f"{type(exc).__name__}: {exc}")
    except BaseException:
        discard(src_path, work_path, out_path)
        raise
    finally:
        release_output_path(out_path)

    if job.status != JobStatus.SUCCEEDED:
        LOGGER.error("FFmpeg error on job %s (%s): %s", job.job_id, upload.original_name, job.error)
        discard(src_path, work_path, out_path)
        return JSONResponse({"error": FAILURE_MESSAGE}, status_code=500)

    count = quota.charge(QUOTA)
    SCHEDULER.schedule_cleanup(src_path, out_path, after=RETENTION_SEC)
    file_name = job.result.file_name
    return JSONResponse(
        {
            "success": True,
            "fileName": file_name,
            "downloadUrl": download_url(request, file_name),
            "count": count,
        }
    )


@app.get("/conversionCount")
def conversion_count():
    record = QUOTA.read()
    return {"totalCount": record.count, "lastResetDate": record.last_reset.isoformat()}


@app.get("/download/{filename}")
def download(filename: str):
    path = resolve_download(OUTPUT_DIR, filename)
    if path is None or not path.is_file():
        raise DownloadNotFound("File not found")
    try:
        fh = path.open("rb")
    except OSError as exc:
        LOGGER.error("Could not open %s for download: %s", path, exc)
        return JSONResponse({"error": "Could not read file"}, status_code=500)
    return StreamingResponse(
        iter_file(fh),
        media_type=OUTPUT_MIME,
        headers={"Content-Disposition": content_disposition(path.name)},
    )
