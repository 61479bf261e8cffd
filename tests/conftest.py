from __future__ import annotations

import asyncio
import os
import stat
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mp3convert import main as app_module
from mp3convert.jobs import JobRunner
from mp3convert.quota import MemoryQuotaStore, QuotaRecord
from mp3convert.scheduler import ExpiryScheduler


FAKE_ENGINES = {
    # Writes a tiny "MP3": an ID3 marker followed by the input bytes.
    "ok": """
src=""
prev=""
for arg; do
  if [ "$prev" = "-i" ]; then src="$arg"; fi
  prev="$arg"
done
printf 'ID3' > "$prev"
cat "$src" >> "$prev"
""",
    "fail": """
echo "moov atom not found" >&2
exit 1
""",
    "empty": """
for last; do :; done
: > "$last"
""",
    "hang": """
exec sleep 30
""",
}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptRunner(JobRunner):
    """JobRunner whose engine is a small shell script instead of ffmpeg."""

    def __init__(self, script: Path, **kwargs) -> None:
        super().__init__("ffmpeg", **kwargs)
        self.script = script

    def build_command(self, src, dst):
        return ["sh", str(self.script)] + super().build_command(src, dst)[1:]


class FakeRunner:
    def __init__(self, payload: bytes = b"ID3-fake-audio", fail: str | None = None) -> None:
        self.payload = payload
        self.fail = fail
        self.gate: asyncio.Event | None = None
        self.jobs = []

    async def run(self, job):
        self.jobs.append(job)
        assert job.upload.storage_path.exists()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            job.mark_failed(self.fail)
        else:
            job.staging_path.write_bytes(self.payload)
            os.replace(job.staging_path, job.output_path)
            job.mark_succeeded()
        return job


@pytest.fixture()
def fake_engine(tmp_path: Path):
    def make(kind: str) -> Path:
        script = tmp_path / f"engine-{kind}.sh"
        script.write_text("#!/bin/sh\n" + FAKE_ENGINES[kind].lstrip(), encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IEXEC)
        return script

    return make


@pytest.fixture()
def script_runner(fake_engine):
    def make(kind: str, **kwargs) -> ScriptRunner:
        return ScriptRunner(fake_engine(kind), **kwargs)

    return make


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, clock: FakeClock):
    """Point the web module at temp dirs, an in-memory quota and a fake-clock scheduler."""

    upload_dir = tmp_path / "uploads"
    output_dir = tmp_path / "converted"
    upload_dir.mkdir()
    output_dir.mkdir()
    store = MemoryQuotaStore(QuotaRecord(0, datetime.now(timezone.utc)))
    scheduler = ExpiryScheduler(clock=clock)
    runner = FakeRunner()

    monkeypatch.setattr(app_module, "UPLOAD_DIR", upload_dir)
    monkeypatch.setattr(app_module, "OUTPUT_DIR", output_dir)
    monkeypatch.setattr(app_module, "QUOTA", store)
    monkeypatch.setattr(app_module, "SCHEDULER", scheduler)
    monkeypatch.setattr(app_module, "RUNNER", runner)
    monkeypatch.setattr(app_module, "PUBLIC_BASE_URL", "")
    monkeypatch.setattr(app_module, "ALLOWED_ORIGINS", ["*"])
    return app_module
