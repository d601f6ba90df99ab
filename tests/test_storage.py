"""Storage engine — add, fetch, dump, list, purge and lazy eviction."""

import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import timedelta

import pytest

from gblist.errors import NoBucketError, StorageError, ValidationError
from gblist.models import Record, make_record, utcnow
from gblist.storage.engine import Storage

from conftest import BUCKET


def _raw_put(db_path, bucket, key, value):
    """Write an entry behind the engine's back, as an older version would have."""
    conn = sqlite3.connect(str(db_path))
    with conn:
        conn.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (bucket,))
        conn.execute(
            "INSERT OR REPLACE INTO entries (bucket, key, value) VALUES (?, ?, ?)",
            (bucket, key, value),
        )
    conn.close()


@contextmanager
def _writer_holding_lock(db_path):
    """Keep the database write-locked from another connection."""
    conn = sqlite3.connect(str(db_path), isolation_level=None)
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    finally:
        conn.execute("ROLLBACK")
        conn.close()


def _stored_keys(db_path, bucket):
    conn = sqlite3.connect(str(db_path))
    keys = [k for (k,) in conn.execute("SELECT key FROM entries WHERE bucket = ? ORDER BY key", (bucket,))]
    conn.close()
    return keys


@pytest.fixture
def impatient_storage(db_path, clock):
    s = Storage.open(db_path, ttl=timedelta(minutes=10), clock=clock, busy_timeout=0.05)
    yield s
    s.close()


def test_open_creates_database_file(db_path):
    s = Storage.open(db_path, ttl=timedelta(minutes=10))
    s.close()
    assert db_path.exists()


def test_open_rejects_non_database_file(tmp_path):
    path = tmp_path / "broken.db"
    path.write_bytes(b"this is definitely not a sqlite database" * 100)
    with pytest.raises(StorageError):
        Storage.open(path)


def test_open_rejects_missing_directory(tmp_path):
    with pytest.raises(StorageError):
        Storage.open(tmp_path / "missing" / "dir" / "x.db")


def test_add_then_fetch_is_live(storage):
    ttl = timedelta(minutes=10)
    storage.add(BUCKET, make_record("192.0.2.1", ttl))
    record = storage.fetch(BUCKET, "192.0.2.1")
    assert record is not None
    assert abs(record.expires_at - (utcnow() + ttl)) < timedelta(seconds=5)
    assert record.is_live()


def test_add_revalidates_address(storage):
    with pytest.raises(ValidationError):
        storage.add(BUCKET, Record("not-an-ip", utcnow() + timedelta(days=1)))
    with pytest.raises(NoBucketError):
        storage.fetch(BUCKET, "not-an-ip")


def test_add_address_uses_default_ttl(clocked_storage, clock):
    record = clocked_storage.add_address(BUCKET, " 192.0.2.9 ", "manual")
    assert record.expires_at == clock.now + timedelta(minutes=10)
    assert clocked_storage.fetch(BUCKET, "192.0.2.9") == record


def test_second_add_overwrites_ttl_and_description(clocked_storage, clock):
    clocked_storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10), "first", now=clock.now))
    clocked_storage.add(BUCKET, make_record("192.0.2.1", timedelta(hours=2), "second", now=clock.now))
    dump = clocked_storage.dump(BUCKET)
    assert len(dump) == 1
    assert dump[0].expires_at == clock.now + timedelta(hours=2)
    assert dump[0].description == "second"


def test_address_and_cidr_are_distinct_keys(storage):
    storage.add(BUCKET, make_record("10.0.0.1", timedelta(minutes=10)))
    storage.add(BUCKET, make_record("10.0.0.0/24", timedelta(minutes=10)))
    storage.add(BUCKET, make_record("10.0.0.1/32", timedelta(minutes=10)))
    addresses = sorted(r.address for r in storage.list(BUCKET))
    assert addresses == ["10.0.0.0/24", "10.0.0.1", "10.0.0.1/32"]


def test_buckets_are_independent(storage):
    storage.add("a", make_record("192.0.2.1", timedelta(minutes=10)))
    storage.add("b", make_record("192.0.2.2", timedelta(minutes=10)))
    assert [r.address for r in storage.list("a")] == ["192.0.2.1"]
    assert [r.address for r in storage.list("b")] == ["192.0.2.2"]
    assert storage.buckets() == ["a", "b"]


def test_fetch_missing_key_returns_none(storage):
    storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10)))
    assert storage.fetch(BUCKET, "192.0.2.2") is None


def test_missing_bucket_raises(storage):
    with pytest.raises(NoBucketError) as info:
        storage.fetch("nope", "192.0.2.1")
    assert info.value.bucket == "nope"
    with pytest.raises(NoBucketError):
        storage.dump("nope")
    with pytest.raises(NoBucketError):
        storage.list("nope")
    with pytest.raises(NoBucketError):
        storage.purge("nope", "192.0.2.1")
    assert storage.buckets() == []


def test_fetch_does_not_evict_expired_records(clocked_storage, clock):
    clocked_storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=1), now=clock.now))
    clock.advance(minutes=5)
    record = clocked_storage.fetch(BUCKET, "192.0.2.1")
    assert record is not None
    assert not record.is_live(clock.now)
    # Still stored after the fetch.
    assert [r.address for r in clocked_storage.dump(BUCKET)] == ["192.0.2.1"]


def test_list_purges_expired_records(clocked_storage, clock):
    clocked_storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=1), now=clock.now))
    clocked_storage.add(BUCKET, make_record("192.0.2.2", timedelta(hours=1), now=clock.now))
    clock.advance(minutes=5)

    assert [r.address for r in clocked_storage.list(BUCKET)] == ["192.0.2.2"]
    assert [r.address for r in clocked_storage.dump(BUCKET)] == ["192.0.2.2"]


def test_dump_reports_expired_records(clocked_storage, clock):
    clocked_storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=1), now=clock.now))
    clock.advance(minutes=5)
    assert [r.address for r in clocked_storage.dump(BUCKET)] == ["192.0.2.1"]


def test_dump_is_ordered_by_key(storage):
    for address in ["192.0.2.3", "10.0.0.0/8", "192.0.2.1"]:
        storage.add(BUCKET, make_record(address, timedelta(minutes=10)))
    assert [r.address for r in storage.dump(BUCKET)] == ["10.0.0.0/8", "192.0.2.1", "192.0.2.3"]


def test_tiny_ttl_is_purged_by_list(storage):
    storage.add(BUCKET, make_record("127.0.0.1", timedelta(microseconds=1)))
    storage.add(BUCKET, make_record("192.168.0.0", timedelta(microseconds=1)))
    time.sleep(0.01)
    assert storage.list(BUCKET) == []
    assert storage.dump(BUCKET) == []


def test_overwrite_with_tiny_ttl_expires(storage):
    storage.add("b", make_record("192.168.1.5", timedelta(minutes=10)))
    storage.add("b", make_record("192.168.1.5", timedelta(microseconds=1)))
    time.sleep(0.001)
    assert storage.list("b") == []
    assert storage.dump("b") == []


def test_purge_removes_records(storage):
    storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10)))
    storage.add(BUCKET, make_record("192.0.2.2", timedelta(minutes=10)))
    storage.purge(BUCKET, "192.0.2.1", "192.0.2.99")
    assert storage.fetch(BUCKET, "192.0.2.1") is None
    assert storage.fetch(BUCKET, "192.0.2.2") is not None


def test_purge_with_no_addresses_is_a_noop(storage):
    storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10)))
    storage.purge(BUCKET)
    assert len(storage.dump(BUCKET)) == 1


def test_legacy_entry_is_dumped_while_unexpired(storage, db_path):
    expires = int(time.time()) + 3600
    _raw_put(db_path, BUCKET, "192.0.2.77", str(expires).encode("ascii"))

    dump = storage.dump(BUCKET)
    assert len(dump) == 1
    assert dump[0].address == "192.0.2.77"
    assert int(dump[0].expires_at.timestamp()) == expires
    assert dump[0].description == ""
    assert [r.address for r in storage.list(BUCKET)] == ["192.0.2.77"]
    assert storage.fetch(BUCKET, "192.0.2.77") == dump[0]


def test_legacy_entry_is_purged_once_expired(storage, db_path):
    _raw_put(db_path, BUCKET, "192.0.2.77", str(int(time.time()) - 10).encode("ascii"))
    assert len(storage.dump(BUCKET)) == 1
    assert storage.list(BUCKET) == []
    assert storage.dump(BUCKET) == []


def test_dump_purges_corrupt_and_invalid_entries(storage, db_path):
    storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10)))
    _raw_put(db_path, BUCKET, "192.0.2.2", b"{not json")
    _raw_put(db_path, BUCKET, "not-an-ip", b"1999999999")

    # Fetch neither evicts nor fails on the corrupt entry.
    assert storage.fetch(BUCKET, "192.0.2.2") is None
    assert [r.address for r in storage.dump(BUCKET)] == ["192.0.2.1"]
    assert _stored_keys(db_path, BUCKET) == ["192.0.2.1"]


def test_operations_after_close_fail(db_path):
    s = Storage.open(db_path)
    s.close()
    with pytest.raises(StorageError):
        s.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10)))


def test_context_manager_closes(db_path):
    with Storage.open(db_path) as s:
        s.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10)))
    with pytest.raises(StorageError):
        s.dump(BUCKET)


def test_data_survives_reopen(db_path):
    with Storage.open(db_path) as s:
        s.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10), "kept"))
    with Storage.open(db_path) as s:
        assert s.fetch(BUCKET, "192.0.2.1").description == "kept"


def test_read_snapshot_ignores_concurrent_write(storage):
    storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10)))

    with storage._read_tx() as conn:
        before = conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]

        writer = threading.Thread(
            target=storage.add,
            args=(BUCKET, make_record("192.0.2.2", timedelta(minutes=10))),
        )
        writer.start()
        writer.join()

        during = conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]

    assert before == during == 1
    assert len(storage.dump(BUCKET)) == 2


def test_concurrent_adds_from_threads(storage):
    def worker(start):
        for i in range(start, start + 10):
            storage.add(BUCKET, make_record(f"10.0.{i}.1", timedelta(minutes=10)))

    threads = [threading.Thread(target=worker, args=(n * 10,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(storage.list(BUCKET)) == 40


def test_list_keeps_record_readded_after_it_was_read(clocked_storage, clock, db_path, monkeypatch):
    clocked_storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=1), now=clock.now))
    clock.advance(minutes=5)

    other = Storage.open(db_path, clock=clock)
    snapshot = clocked_storage._snapshot

    def snapshot_then_readd(bucket):
        result = snapshot(bucket)
        other.add(bucket, make_record("192.0.2.1", timedelta(hours=1), "again", now=clock.now))
        return result

    monkeypatch.setattr(clocked_storage, "_snapshot", snapshot_then_readd)
    try:
        assert clocked_storage.list(BUCKET) == []
    finally:
        other.close()
    monkeypatch.undo()

    record = clocked_storage.fetch(BUCKET, "192.0.2.1")
    assert record is not None
    assert record.description == "again"
    assert record.is_live(clock.now)


def test_dump_keeps_corrupt_key_rewritten_after_it_was_read(storage, db_path, monkeypatch):
    _raw_put(db_path, BUCKET, "192.0.2.2", b"{not json")

    snapshot = storage._snapshot

    def snapshot_then_rewrite(bucket):
        result = snapshot(bucket)
        with Storage.open(db_path) as other:
            other.add(bucket, make_record("192.0.2.2", timedelta(hours=1), "fresh"))
        return result

    monkeypatch.setattr(storage, "_snapshot", snapshot_then_rewrite)
    assert storage.dump(BUCKET) == []
    monkeypatch.undo()

    assert storage.fetch(BUCKET, "192.0.2.2").description == "fresh"


def test_failed_add_leaves_previous_state(impatient_storage, clock, db_path):
    impatient_storage.add(BUCKET, make_record("192.0.2.1", timedelta(hours=1), "first", now=clock.now))

    with _writer_holding_lock(db_path):
        with pytest.raises(StorageError):
            impatient_storage.add(BUCKET, make_record("192.0.2.1", timedelta(hours=2), "second", now=clock.now))
        with pytest.raises(StorageError):
            impatient_storage.add("other", make_record("192.0.2.2", timedelta(hours=2), now=clock.now))

    assert impatient_storage.fetch(BUCKET, "192.0.2.1").description == "first"
    assert impatient_storage.buckets() == [BUCKET]


def test_dump_survives_failed_corrupt_purge(impatient_storage, clock, db_path):
    impatient_storage.add(BUCKET, make_record("192.0.2.1", timedelta(hours=1), now=clock.now))
    _raw_put(db_path, BUCKET, "192.0.2.2", b"{not json")

    with _writer_holding_lock(db_path):
        assert [r.address for r in impatient_storage.dump(BUCKET)] == ["192.0.2.1"]
    assert _stored_keys(db_path, BUCKET) == ["192.0.2.1", "192.0.2.2"]

    # The next dump gets another try.
    assert [r.address for r in impatient_storage.dump(BUCKET)] == ["192.0.2.1"]
    assert _stored_keys(db_path, BUCKET) == ["192.0.2.1"]


def test_list_raises_when_expired_purge_fails(impatient_storage, clock, db_path):
    impatient_storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=1), now=clock.now))
    clock.advance(minutes=5)

    with _writer_holding_lock(db_path):
        with pytest.raises(StorageError):
            impatient_storage.list(BUCKET)
    assert _stored_keys(db_path, BUCKET) == ["192.0.2.1"]

    assert impatient_storage.list(BUCKET) == []
    assert _stored_keys(db_path, BUCKET) == []


def test_connections_of_exited_threads_are_closed(storage):
    storage.add(BUCKET, make_record("192.0.2.1", timedelta(minutes=10)))
    seen = []

    def reader():
        seen.append(len(storage.dump(BUCKET)))

    for _ in range(5):
        t = threading.Thread(target=reader)
        t.start()
        t.join()

    assert seen == [1] * 5
    # This thread's connection plus the one left by the last reader.
    assert len(storage._connections) == 2
