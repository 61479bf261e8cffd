# mp3convert/config.py
from __future__ import annotations

import os
import shutil
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


# ------------ Server ------------
PORT = int(os.getenv("PORT", "5000") or "5000")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")
ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ------------ Paths ------------
APP_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(APP_DIR / ".." / "data")))
UPLOAD_DIR = DATA_DIR / "uploads"
OUTPUT_DIR = DATA_DIR / "converted"
QUOTA_FILE = Path(os.getenv("QUOTA_FILE", str(DATA_DIR / "conversionCount.json")))

# ffmpeg comes from PATH unless FFMPEG_BIN points somewhere else
FFMPEG = os.getenv("FFMPEG_BIN") or shutil.which("ffmpeg") or "ffmpeg"

# ------------ Limits ------------
DAILY_LIMIT = int(os.getenv("DAILY_LIMIT", "3"))
RETENTION_SEC = float(os.getenv("RETENTION_SEC", "60"))
MAX_CONCURRENT_JOBS = max(1, int(os.getenv("MAX_CONCURRENT_JOBS", "2")))
JOB_TIMEOUT_SEC = float(os.getenv("JOB_TIMEOUT_SEC", "600"))
MAX_SIZE_MB = float(os.getenv("MAX_SIZE_MB", "500"))

ALLOWED_MIME = "video/mp4"
OUTPUT_MIME = "audio/mpeg"
OUTPUT_EXT = ".mp3"


def ensure_dirs(*dirs: Path) -> None:
    for p in dirs or (DATA_DIR, UPLOAD_DIR, OUTPUT_DIR):
        p.mkdir(parents=True, exist_ok=True)

# Behind a reverse proxy (Render, nginx) the public scheme/host come from X-Forwarded-*
PROXY_HEADERS = _env_flag("PROXY_HEADERS", "1")
