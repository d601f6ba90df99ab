# gblist/storage/engine.py

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, Union

from gblist.errors import NoBucketError, StorageError, ValidationError
from gblist.models import Record, make_record, utcnow
from gblist.storage.codec import UndecodableEntry, decode_entry, encode_record, to_record
from gblist.utils.logging import get_logger
from gblist.validation import validate

log = get_logger(__name__)

PathLike = Union[str, Path]
# A stored key together with the exact bytes read for it.
RawEntry = Tuple[str, bytes]

DEFAULT_TTL = timedelta(days=14)
BUSY_TIMEOUT = 5.0  # seconds

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS buckets (
        name TEXT PRIMARY KEY
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entries (
        bucket TEXT NOT NULL REFERENCES buckets(name),
        key TEXT NOT NULL,
        value BLOB NOT NULL,
        PRIMARY KEY (bucket, key)
    ) WITHOUT ROWID
    """,
)


class Storage:
    """
    Bucketed, time-bounded denylist persisted in a SQLite file.

    Every thread talks to the file through its own connection. Writes run in
    BEGIN IMMEDIATE transactions, so only one writer holds the file at a
    time; reads run in deferred transactions that pin a WAL snapshot and
    never block on the writer. Expired and corrupt entries are only removed
    as a side effect of list() and dump().
    """

    def __init__(
            self,
            path: PathLike,
            ttl: timedelta = DEFAULT_TTL,
            clock: Callable[[], datetime] = utcnow,
            busy_timeout: float = BUSY_TIMEOUT,
    ):
        self.path = Path(path)
        self.ttl = ttl
        self.clock = clock
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        # (owning thread, connection); pruned once the thread has exited.
        self._connections: List[Tuple[threading.Thread, sqlite3.Connection]] = []
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(
            cls,
            path: PathLike,
            ttl: timedelta = DEFAULT_TTL,
            clock: Callable[[], datetime] = utcnow,
            busy_timeout: float = BUSY_TIMEOUT,
    ) -> "Storage":
        """
        Open (creating if needed) the database at path.

        busy_timeout is how long, in seconds, a write waits for another
        writer to release the file before failing.

        Raises:
            StorageError if the file cannot be opened or is not a database
        """
        storage = cls(path, ttl=ttl, clock=clock, busy_timeout=busy_timeout)
        try:
            with storage._write_tx() as conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
        except StorageError:
            storage.close()
            raise
        log.debug("Opened %s", storage.path)
        return storage

    # -- connections and transactions ---------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._closed:
            raise StorageError(f"storage {self.path} is closed")

        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn

        conn = None
        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            raise StorageError(f"cannot open {self.path}", e) from e

        with self._lock:
            alive = [(t, c) for t, c in self._connections if t.is_alive()]
            dead = [c for t, c in self._connections if not t.is_alive()]
            self._connections = alive + [(threading.current_thread(), conn)]
        for stale in dead:
            try:
                stale.close()
            except sqlite3.Error as e:
                log.warning("Error closing connection of exited thread: %s", e)
        if dead:
            log.debug("Closed %d connections left by exited threads", len(dead))

        self._local.conn = conn
        return conn

    @contextmanager
    def _write_tx(self) -> Iterator[sqlite3.Connection]:
        conn = self._connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            log.error("Cannot start write transaction on %s: %s", self.path, e)
            raise StorageError("cannot start write transaction", e) from e
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException as e:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                pass
            if isinstance(e, sqlite3.Error):
                log.error("Write transaction on %s failed: %s", self.path, e)
                raise StorageError("write transaction failed", e) from e
            raise

    @contextmanager
    def _read_tx(self) -> Iterator[sqlite3.Connection]:
        conn = self._connection()
        try:
            conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise StorageError("cannot start read transaction", e) from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError("read transaction failed", e) from e
        finally:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error:
                pass

    @staticmethod
    def _bucket_exists(conn: sqlite3.Connection, bucket: str) -> bool:
        row = conn.execute("SELECT 1 FROM buckets WHERE name = ?", (bucket,)).fetchone()
        return row is not None

    # -- operations ------------------------------------------------------------

    def add(self, bucket: str, record: Record) -> None:
        """
        Insert or replace record in bucket, creating the bucket if absent.

        Raises:
            ValidationError if record.address is not an IP/CIDR
            StorageError if the transaction does not commit
        """
        valid, reason = validate(record.address)
        if not valid:
            raise ValidationError(record.address, reason or "invalid address")

        payload = encode_record(record)
        with self._write_tx() as conn:
            conn.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (bucket,))
            conn.execute(
                "INSERT OR REPLACE INTO entries (bucket, key, value) VALUES (?, ?, ?)",
                (bucket, record.address, payload),
            )
        log.debug("Added %s to %s (expires %s)", record.address, bucket, record.expires_at.isoformat())

    def add_address(self, bucket: str, address: str, description: str = "") -> Record:
        """Build a record with the storage's default TTL and add it."""
        record = make_record(address, self.ttl, description, now=self.clock())
        self.add(bucket, record)
        return record

    def fetch(self, bucket: str, address: str) -> Optional[Record]:
        """
        Look up a single stored record, live or not.

        Nothing is evicted here; callers check Record.is_live() themselves.

        Returns:
            the decoded Record, or None if absent or undecodable
        """
        with self._read_tx() as conn:
            if not self._bucket_exists(conn, bucket):
                raise NoBucketError(bucket)
            row = conn.execute(
                "SELECT value FROM entries WHERE bucket = ? AND key = ?",
                (bucket, address),
            ).fetchone()

        if row is None:
            return None
        entry = decode_entry(address, bytes(row[0]))
        if isinstance(entry, UndecodableEntry):
            log.warning("Entry %s in %s is undecodable: %s", address, bucket, entry.reason)
            return None
        return to_record(entry)

    def _snapshot(self, bucket: str) -> Tuple[List[Tuple[Record, bytes]], List[RawEntry]]:
        """Read bucket in one snapshot, splitting usable records from corrupt entries."""
        records: List[Tuple[Record, bytes]] = []
        corrupt: List[RawEntry] = []

        with self._read_tx() as conn:
            if not self._bucket_exists(conn, bucket):
                raise NoBucketError(bucket)
            cursor = conn.execute(
                "SELECT key, value FROM entries WHERE bucket = ? ORDER BY key",
                (bucket,),
            )
            for key, value in cursor:
                value = bytes(value)
                record = to_record(decode_entry(key, value))
                if record is None:
                    corrupt.append((key, value))
                else:
                    records.append((record, value))
        return records, corrupt

    def _evict(self, bucket: str, entries: Iterable[RawEntry]) -> int:
        """
        Delete entries whose stored value is still the one that was read.

        A key rewritten since the snapshot no longer matches and is kept.

        Returns:
            the number of entries deleted
        """
        entries = [(bucket, key, value) for key, value in entries]
        if not entries:
            return 0
        with self._write_tx() as conn:
            cursor = conn.executemany(
                "DELETE FROM entries WHERE bucket = ? AND key = ? AND value = ?",
                entries,
            )
            deleted = cursor.rowcount
        if deleted < len(entries):
            log.debug("Kept %d entries of %s rewritten since they were read", len(entries) - deleted, bucket)
        return deleted

    def _decodable(self, bucket: str) -> List[Tuple[Record, bytes]]:
        records, corrupt = self._snapshot(bucket)
        if corrupt:
            log.warning("Purging %d corrupt or invalid entries from %s", len(corrupt), bucket)
            try:
                self._evict(bucket, corrupt)
            except StorageError as e:
                # Left in place; the next dump() tries again.
                log.error("Could not purge corrupt entries from %s: %s", bucket, e)
        return records

    def dump(self, bucket: str) -> List[Record]:
        """
        Return every decodable, address-valid record in bucket, expired or not.

        Entries that fail to decode or re-validate are deleted afterwards in a
        separate best-effort write transaction, unless they were rewritten in
        the meantime.
        """
        return [record for record, _ in self._decodable(bucket)]

    def list(self, bucket: str) -> List[Record]:
        """
        Return the records of bucket that are still live, purging expired ones.

        Only entries still holding the expired value are deleted; a record
        re-added after the read survives.

        Raises:
            StorageError if the expired entries could not be purged
        """
        now = self.clock()
        live: List[Record] = []
        expired: List[RawEntry] = []
        for record, value in self._decodable(bucket):
            if now < record.expires_at:
                live.append(record)
            else:
                expired.append((record.address, value))

        if expired:
            log.info("Purging %d expired entries from %s", len(expired), bucket)
            self._evict(bucket, expired)
        return live

    def purge(self, bucket: str, *addresses: str) -> None:
        """
        Delete addresses from bucket in one transaction; absent keys are ignored.

        Raises:
            NoBucketError if the bucket does not exist (nothing is deleted)
        """
        with self._write_tx() as conn:
            if not self._bucket_exists(conn, bucket):
                raise NoBucketError(bucket)
            conn.executemany(
                "DELETE FROM entries WHERE bucket = ? AND key = ?",
                [(bucket, address) for address in addresses],
            )
        if addresses:
            log.info("Purged %s from %s", ", ".join(addresses), bucket)

    def buckets(self) -> List[str]:
        with self._read_tx() as conn:
            rows = conn.execute("SELECT name FROM buckets ORDER BY name").fetchall()
        return [name for (name,) in rows]

    def close(self) -> None:
        """Release every connection; the storage is unusable afterwards."""
        with self._lock:
            connections, self._connections = self._connections, []
            self._closed = True
        for _, conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                log.warning("Error closing %s: %s", self.path, e)
        self._local = threading.local()

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
