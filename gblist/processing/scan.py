# gblist/processing/scan.py

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator, Pattern, Sequence, Union

from gblist.errors import ValidationError
from gblist.models import make_record
from gblist.processing.normalize import add_mask
from gblist.utils.logging import get_logger

if TYPE_CHECKING:
    from gblist.config import Settings
    from gblist.storage.engine import Storage

log = get_logger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class ScanSummary:
    lines: int = 0
    candidates: int = 0
    whitelisted: int = 0
    added: int = 0
    rejected: int = 0


def extract_candidates(line: str, regexps: Sequence[Pattern[str]]) -> Iterator[IPAddress]:
    """
    Yield the first capture group of every match in line that parses as an IP.

    Patterns without a capture group, empty groups and non-address text are
    skipped silently.
    """
    for regexp in regexps:
        if regexp.groups < 1:
            continue
        for match in regexp.finditer(line):
            text = match.group(1)
            if not text:
                continue
            try:
                yield ipaddress.ip_address(text.strip())
            except ValueError:
                log.debug("Ignoring non-address match %r", text)


def is_whitelisted(address: IPAddress, networks: Iterable[IPNetwork]) -> bool:
    for network in networks:
        if address.version == network.version and address in network:
            return True
    return False


def scan_lines(
        lines: Iterable[str],
        settings: "Settings",
        storage: "Storage",
        summary: ScanSummary,
) -> None:
    for line in lines:
        summary.lines += 1
        for address in extract_candidates(line, settings.regexps):
            summary.candidates += 1
            if is_whitelisted(address, settings.whitelist):
                summary.whitelisted += 1
                continue

            text = str(address)
            if settings.mask:
                text = add_mask(text)
            try:
                record = make_record(text, settings.ttl, settings.description, now=storage.clock())
                storage.add(settings.bucket, record)
            except ValidationError as e:
                summary.rejected += 1
                log.warning("Skipping %s: %s", text, e.reason)
                continue
            summary.added += 1


def scan_sources(settings: "Settings", storage: "Storage") -> ScanSummary:
    """
    Extract addresses from every configured source file and add them.

    Each add is its own transaction; nothing is rolled back if a later
    source fails.

    Raises:
        OSError if a source cannot be read
        StorageError if the database rejects a write
        TTLError if the configured ttl cannot stamp an expiry
    """
    summary = ScanSummary()
    for source in settings.sources:
        path = Path(source).expanduser()
        log.info("Scanning %s", path)
        with path.open("r", encoding="utf-8", errors="replace") as fh:
            scan_lines(fh, settings, storage, summary)

    log.info(
        "Scanned %d lines: %d candidates, %d whitelisted, %d added, %d rejected",
        summary.lines, summary.candidates, summary.whitelisted, summary.added, summary.rejected,
    )
    return summary
