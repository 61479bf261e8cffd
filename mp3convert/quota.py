"""Daily conversion counter.

A single global record ``{count, lastResetDate}`` is shared by every request.
The counter only charges successful conversions and is reset the first time a
request arrives on a new UTC calendar date.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QuotaRecord:
    count: int
    last_reset: datetime

    @classmethod
    def fresh(cls, now: Optional[datetime] = None) -> "QuotaRecord":
        return cls(count=0, last_reset=now or utcnow())

    @property
    def reset_date(self) -> date:
        stamp = self.last_reset
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return stamp.astimezone(timezone.utc).date()

    def to_dict(self) -> dict:
        return {"count": self.count, "lastResetDate": self.last_reset.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "QuotaRecord":
        count = data["count"]
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValueError(f"invalid count: {count!r}")
        stamp = datetime.fromisoformat(str(data["lastResetDate"]).replace("Z", "+00:00"))
        return cls(count=count, last_reset=stamp)


class QuotaStore:
    """Persistence for the quota record; ``write`` replaces the whole record."""

    def read(self) -> QuotaRecord:
        raise NotImplementedError

    def write(self, count: int, reset_at: datetime) -> None:
        raise NotImplementedError

    def ensure(self) -> None:
        """Create the initial record if the backend has none."""


class MemoryQuotaStore(QuotaStore):
    def __init__(self, record: Optional[QuotaRecord] = None) -> None:
        self._record = record
        self.writes = 0

    def read(self) -> QuotaRecord:
        if self._record is None:
            return QuotaRecord.fresh()
        return QuotaRecord(self._record.count, self._record.last_reset)

    def write(self, count: int, reset_at: datetime) -> None:
        self._record = QuotaRecord(count, reset_at)
        self.writes += 1

    def ensure(self) -> None:
        if self._record is None:
            self._record = QuotaRecord.fresh()


class JsonQuotaStore(QuotaStore):
    """Quota record kept in a small JSON file, read and written as a whole."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read(self) -> QuotaRecord:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return QuotaRecord.from_dict(data)
        except FileNotFoundError:
            LOGGER.warning("Quota file %s missing; starting from zero", self.path)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Quota file %s unreadable (%s); starting from zero", self.path, exc)
        return QuotaRecord.fresh()

    def write(self, count: int, reset_at: datetime) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = QuotaRecord(count, reset_at).to_dict()
        self.path.write_text(json.dumps(payload), encoding="utf-8")

    def ensure(self) -> None:
        if not self.path.exists():
            LOGGER.info("Creating quota file %s", self.path)
            self.write(0, utcnow())


# ------------ Admission policy ------------
def refresh(store: QuotaStore, now: Optional[datetime] = None) -> QuotaRecord:
    """Return the current record, resetting it first if the date has rolled over."""

    now = now or utcnow()
    today = now.astimezone(timezone.utc).date()
    record = store.read()
    if record.reset_date != today:
        LOGGER.info(
            "Quota window rolled over (%s -> %s); resetting count %d",
            record.reset_date,
            today,
            record.count,
        )
        store.write(0, now)
        record = QuotaRecord(0, now)
    return record


def is_exhausted(record: QuotaRecord, limit: int) -> bool:
    return record.count >= limit


def charge(store: QuotaStore, now: Optional[datetime] = None) -> int:
    """Add one successful conversion to today's count and return the new total.

    The record is re-read here rather than reusing the value seen at admission,
    so completions finishing in sequence each add exactly one.
    """

    record = refresh(store, now)
    new_count = record.count + 1
    store.write(new_count, record.last_reset)
    return new_count
