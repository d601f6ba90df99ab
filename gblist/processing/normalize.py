# gblist/processing/normalize.py

from __future__ import annotations

from typing import Iterable, Iterator


def add_mask(address: str) -> str:
    """
    Turn a single address into a one-host CIDR block.

    Text that already carries a "/" is returned untouched. Addresses with a
    ":" are treated as IPv6 and get /128, everything else /32.
    """
    if "/" in address:
        return address
    mask = "128" if ":" in address else "32"
    return f"{address}/{mask}"


def clean_lines(lines: Iterable[str]) -> Iterator[str]:
    """Yield stripped, non-blank lines."""
    for line in lines:
        line = line.strip()
        if line:
            yield line
