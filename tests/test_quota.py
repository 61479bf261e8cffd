import json
from datetime import datetime, timedelta, timezone

from mp3convert import quota
from mp3convert.quota import JsonQuotaStore, MemoryQuotaStore, QuotaRecord

NOW = datetime(2024, 5, 10, 15, 30, tzinfo=timezone.utc)


def test_missing_file_reads_as_fresh_record(tmp_path):
    store = JsonQuotaStore(tmp_path / "conversionCount.json")
    record = store.read()
    assert record.count == 0
    assert record.reset_date == datetime.now(timezone.utc).date()
    assert not store.path.exists()


def test_corrupt_file_self_heals(tmp_path):
    path = tmp_path / "conversionCount.json"
    for bad in ["{not json", json.dumps({"count": "two", "lastResetDate": NOW.isoformat()}),
                json.dumps({"count": -1, "lastResetDate": NOW.isoformat()}), json.dumps([1, 2])]:
        path.write_text(bad)
        assert JsonQuotaStore(path).read().count == 0


def test_write_then_read_uses_original_field_names(tmp_path):
    store = JsonQuotaStore(tmp_path / "q.json")
    store.write(2, NOW)
    data = json.loads(store.path.read_text())
    assert data == {"count": 2, "lastResetDate": NOW.isoformat()}
    assert store.read() == QuotaRecord(2, NOW)


def test_reads_javascript_style_timestamps(tmp_path):
    path = tmp_path / "q.json"
    path.write_text(json.dumps({"count": 1, "lastResetDate": "2024-05-10T08:00:00.000Z"}))
    record = JsonQuotaStore(path).read()
    assert record.count == 1
    assert record.reset_date == NOW.date()


def test_ensure_creates_file_once(tmp_path):
    store = JsonQuotaStore(tmp_path / "q.json")
    store.ensure()
    assert store.read().count == 0
    store.write(2, NOW)
    store.ensure()
    assert store.read().count == 2


def test_refresh_same_day_keeps_count():
    store = MemoryQuotaStore(QuotaRecord(2, NOW - timedelta(hours=10)))
    record = quota.refresh(store, NOW)
    assert record.count == 2
    assert store.writes == 0


def test_refresh_new_day_resets_before_admission():
    for prior in (0, 2, 3, 50):
        store = MemoryQuotaStore(QuotaRecord(prior, NOW - timedelta(days=1)))
        record = quota.refresh(store, NOW)
        assert record.count == 0
        assert store.read() == QuotaRecord(0, NOW)
        assert not quota.is_exhausted(record, 3)


def test_day_boundary_uses_utc_date():
    just_before_midnight = datetime(2024, 5, 9, 23, 59, 59, tzinfo=timezone.utc)
    store = MemoryQuotaStore(QuotaRecord(3, just_before_midnight))
    after = datetime(2024, 5, 10, 0, 0, 1, tzinfo=timezone.utc)
    assert quota.refresh(store, after).count == 0

    # 01:00 in UTC+2 is still the 9th in UTC
    store = MemoryQuotaStore(QuotaRecord(3, just_before_midnight))
    local = datetime(2024, 5, 10, 1, 0, tzinfo=timezone(timedelta(hours=2)))
    assert quota.refresh(store, local).count == 3


def test_admission_threshold():
    assert not quota.is_exhausted(QuotaRecord(0, NOW), 3)
    assert not quota.is_exhausted(QuotaRecord(2, NOW), 3)
    assert quota.is_exhausted(QuotaRecord(3, NOW), 3)
    assert quota.is_exhausted(QuotaRecord(7, NOW), 3)


def test_charge_adds_exactly_one_and_keeps_reset_date():
    start = NOW - timedelta(hours=3)
    store = MemoryQuotaStore(QuotaRecord(1, start))
    assert quota.charge(store, NOW) == 2
    assert store.read() == QuotaRecord(2, start)
    assert quota.charge(store, NOW) == 3


def test_charge_after_rollover_counts_from_zero():
    store = MemoryQuotaStore(QuotaRecord(3, NOW - timedelta(days=2)))
    assert quota.charge(store, NOW) == 1
