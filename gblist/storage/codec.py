# gblist/storage/codec.py

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from gblist.errors import SerializationError
from gblist.models import Record
from gblist.validation import is_valid

# Earlier databases stored the expiry as a bare unix timestamp string.
_LEGACY_RE = re.compile(rb"^[+-]?[0-9]+$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)
_LATEST = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class CurrentEntry:
    record: Record


@dataclass(frozen=True)
class LegacyEntry:
    address: str
    timestamp: int


@dataclass(frozen=True)
class UndecodableEntry:
    key: str
    reason: str


DecodedEntry = Union[CurrentEntry, LegacyEntry, UndecodableEntry]


def encode_record(record: Record) -> bytes:
    payload = {
        "address": record.address,
        "expires_at": record.expires_at.astimezone(timezone.utc).isoformat(),
        "description": record.description,
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _decode_current(key: str, value: bytes) -> Record:
    try:
        payload = json.loads(value.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SerializationError(key, str(e)) from e
    if not isinstance(payload, dict):
        raise SerializationError(key, "payload is not an object")

    address = payload.get("address", key)
    expires_at = payload.get("expires_at")
    description = payload.get("description", "")
    if not isinstance(address, str) or not isinstance(expires_at, str):
        raise SerializationError(key, "missing address or expires_at")
    if address != key:
        raise SerializationError(key, f"stored address {address!r} does not match its key")
    if not isinstance(description, str):
        raise SerializationError(key, "description is not a string")
    try:
        instant = datetime.fromisoformat(expires_at)
    except ValueError as e:
        raise SerializationError(key, str(e)) from e
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return Record(address=address, expires_at=instant, description=description)


def _decode_legacy(key: str, value: bytes) -> int:
    if not _LEGACY_RE.match(value.strip()):
        raise SerializationError(key, "value is neither a record nor a unix timestamp")
    return int(value)


def decode_entry(key: str, value: bytes) -> DecodedEntry:
    """
    Detect the schema of a stored value and decode it.

    The current JSON schema is tried first; a bare integer timestamp with
    the address taken from the key is the fallback.
    """
    try:
        return CurrentEntry(_decode_current(key, value))
    except SerializationError as current_error:
        try:
            return LegacyEntry(address=key, timestamp=_decode_legacy(key, value))
        except SerializationError:
            return UndecodableEntry(key=key, reason=current_error.reason)


def _legacy_expiry(timestamp: int) -> datetime:
    """Seconds since the epoch, clamped to the datetime range."""
    try:
        return _EPOCH + timedelta(seconds=timestamp)
    except OverflowError:
        return _LATEST if timestamp > 0 else _EARLIEST


def to_record(entry: DecodedEntry) -> Optional[Record]:
    """
    Normalize a decoded entry into a Record.

    Returns:
        the Record, or None when the entry is undecodable or its address
        no longer validates
    """
    if isinstance(entry, CurrentEntry):
        record = entry.record
    elif isinstance(entry, LegacyEntry):
        expires_at = _legacy_expiry(entry.timestamp)
        record = Record(address=entry.address, expires_at=expires_at)
    else:
        return None

    if not is_valid(record.address):
        return None
    return record
