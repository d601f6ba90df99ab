# gblist/report/export.py

from __future__ import annotations

import ipaddress
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Literal, Optional, Sequence, Union

import pandas as pd

from gblist.models import Record, utcnow
from gblist.utils.logging import get_logger

log = get_logger(__name__)

PathLike = Union[str, Path]
ReportFormat = Literal["plain", "dump", "template", "csv", "json"]

COLUMNS = ["address", "expires_at", "description", "live", "remaining"]

_SAMPLE = Record(
    address="192.0.2.0/24",
    expires_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
    description="sample",
)


def _network(address: str) -> str:
    """Canonical network for an address or CIDR (host bits cleared)."""
    try:
        return str(ipaddress.ip_network(address, strict=False))
    except ValueError:
        return address


def _fields(record: Record) -> Dict[str, str]:
    return {
        "address": record.address,
        "expires_at": record.expires_at.isoformat(),
        "description": record.description,
        "network": _network(record.address),
    }


def check_template(template: str) -> None:
    """
    Make sure template only references known record fields.

    Raises:
        ValueError if formatting a sample record fails
    """
    try:
        template.format(**_fields(_SAMPLE))
    except (KeyError, IndexError, ValueError, AttributeError) as e:
        raise ValueError(f"{template!r}: {e!r}") from e


def records_to_dataframe(records: Iterable[Record], now: Optional[datetime] = None) -> pd.DataFrame:
    """
    Tabulate records, one row per record, in the order given.

    The `live` and `remaining` columns are evaluated against `now`
    (defaults to the current time) so a Dump can be reported with its
    expired rows flagged. `remaining` is in seconds and goes negative once
    a record has expired.
    """
    now = now or utcnow()
    rows = [
        {
            "address": r.address,
            "expires_at": r.expires_at,
            "description": r.description,
            "live": r.is_live(now),
            "remaining": r.remaining(now).total_seconds(),
        }
        for r in records
    ]
    df = pd.DataFrame(rows, columns=COLUMNS)
    df["expires_at"] = pd.to_datetime(df["expires_at"], utc=True)
    df["live"] = df["live"].astype(bool)
    df["remaining"] = df["remaining"].astype(float)
    return df


def _with_newline(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


def render_records(
        records: Sequence[Record],
        fmt: ReportFormat = "plain",
        template: Optional[str] = None,
        now: Optional[datetime] = None,
) -> str:
    """
    Render records for output.

    Returns:
        the rendered text; empty string when there is nothing to show in
        the line-oriented formats
    """
    if fmt == "plain":
        return "".join(f"{r.address}\n" for r in records)
    if fmt == "dump":
        return "".join(f"{r.expires_at.isoformat()} {r.address}\n" for r in records)
    if fmt == "template":
        if not template:
            raise ValueError("template format requires a template")
        return "".join(_with_newline(template.format(**_fields(r))) for r in records)

    df = records_to_dataframe(records, now=now)
    if fmt == "csv":
        df["expires_at"] = df["expires_at"].map(lambda ts: ts.isoformat())
        return df.to_csv(index=False)
    if fmt == "json":
        return _with_newline(df.to_json(orient="records", date_format="iso", date_unit="us"))
    raise ValueError(f"Unsupported format: {fmt}")


def save_report(
        records: Sequence[Record],
        path: PathLike,
        fmt: ReportFormat = "plain",
        template: Optional[str] = None,
) -> Path:
    """Write a rendered report to path, creating parent directories."""
    path = Path(path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    text = render_records(records, fmt=fmt, template=template)
    path.write_text(text, encoding="utf-8")
    log.info("Wrote %d records to %s", len(records), path)
    return path

