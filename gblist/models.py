# gblist/models.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from gblist.errors import TTLError, ValidationError
from gblist.validation import ensure_valid, is_valid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Record:
    address: str            # "a.b.c.d", "a.b.c.d/len" or IPv6 equivalents, kept verbatim
    expires_at: datetime    # absolute, timezone-aware UTC instant fixed at write time
    description: str = ""   # optional note on where the listing came from

    def is_live(self, now: Optional[datetime] = None) -> bool:
        """True while the address still validates and the expiry has not passed."""
        if not is_valid(self.address):
            return False
        return (now or utcnow()) < self.expires_at

    def remaining(self, now: Optional[datetime] = None) -> timedelta:
        return self.expires_at - (now or utcnow())


def expiry_for(ttl: timedelta, now: Optional[datetime] = None) -> datetime:
    """
    Absolute expiry ttl after now.

    Raises:
        TTLError if the result does not fit in a datetime
    """
    try:
        return (now or utcnow()) + ttl
    except OverflowError as e:
        raise TTLError(ttl, "expiry falls outside the supported date range") from e


def make_record(
        address: str,
        ttl: timedelta,
        description: str = "",
        now: Optional[datetime] = None,
) -> Record:
    """
    Build a Record expiring ttl from now.

    A zero or negative ttl is accepted and yields an already expired record.

    Raises:
        ValidationError if the address is blank or not an IP/CIDR
        TTLError if ttl is too large to stamp an expiry
    """
    address = (address or "").strip()
    if not address:
        raise ValidationError(address, "record requires a non-empty IP address or CIDR")
    ensure_valid(address)
    return Record(
        address=address,
        expires_at=expiry_for(ttl, now),
        description=(description or "").strip(),
    )
