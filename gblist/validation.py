# gblist/validation.py

from __future__ import annotations

import ipaddress
import re
from typing import Optional, Tuple

from gblist.errors import ValidationError

_PREFIX_RE = re.compile(r"^[0-9]+$")


def _parse_address(text: str) -> None:
    if "%" in text:
        raise ValueError("scoped addresses are not supported")
    ipaddress.ip_address(text)


def _parse_cidr(text: str) -> None:
    address, _, prefix = text.partition("/")
    if not _PREFIX_RE.match(prefix):
        raise ValueError(f"invalid prefix length {prefix!r}")
    _parse_address(address)
    # Host bits may be set: "192.168.1.5/24" is kept verbatim as valid CIDR text.
    ipaddress.ip_network(text, strict=False)


def validate(text: str) -> Tuple[bool, Optional[str]]:
    """
    Classify text as a single IP address or a CIDR block.

    Text containing a slash is parsed as CIDR, anything else as a bare
    IPv4/IPv6 address.

    Returns:
        (True, None) when valid, otherwise (False, reason)
    """
    try:
        if "/" in text:
            _parse_cidr(text)
        else:
            _parse_address(text)
    except ValueError as e:
        return False, f"{text} is not a valid IP address or CIDR: {e}"
    return True, None


def ensure_valid(text: str) -> str:
    """Return text unchanged, or raise ValidationError."""
    valid, reason = validate(text)
    if not valid:
        raise ValidationError(text, reason or f"{text} is not a valid IP address or CIDR")
    return text


def is_valid(text: str) -> bool:
    return validate(text)[0]
