"""Time-bounded IP/CIDR denylist with bucketed, transactional on-disk storage."""

from gblist.errors import (
    ConfigError,
    GblistError,
    NoBucketError,
    SerializationError,
    StorageError,
    TTLError,
    ValidationError,
)
from gblist.models import Record, make_record
from gblist.storage.engine import Storage
from gblist.validation import validate

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "GblistError",
    "NoBucketError",
    "Record",
    "SerializationError",
    "Storage",
    "StorageError",
    "TTLError",
    "ValidationError",
    "make_record",
    "validate",
]
