# gblist/errors.py

from __future__ import annotations

from datetime import timedelta
from typing import Optional


class GblistError(Exception):
    """Base class for every error raised by the package."""


class ValidationError(GblistError):
    """The text is not a valid IP address or CIDR block."""

    def __init__(self, input: str, reason: str):
        self.input = input
        self.reason = reason
        super().__init__(reason)


class NoBucketError(GblistError):
    """The operation targeted a bucket that was never created."""

    def __init__(self, bucket: str):
        self.bucket = bucket
        super().__init__(f"no {bucket} bucket found")


class SerializationError(GblistError):
    """A stored value could not be decoded with any known schema."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"cannot decode entry {key!r}: {reason}")


class StorageError(GblistError):
    """The underlying store failed (I/O, locking, corrupt database file)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ConfigError(GblistError):
    """Invalid command-line or YAML configuration."""


class TTLError(GblistError):
    """The TTL puts the expiry outside the range a timestamp can hold."""

    def __init__(self, ttl: timedelta, reason: str):
        self.ttl = ttl
        self.reason = reason
        super().__init__(f"ttl {ttl} is out of range: {reason}")
