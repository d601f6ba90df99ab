from __future__ import annotations

import ipaddress
import sys
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer

from gblist.config import DEFAULT_DATABASE, build_settings, load_config
from gblist.errors import ConfigError, NoBucketError, StorageError, TTLError, ValidationError
from gblist.models import Record, expiry_for, make_record, utcnow
from gblist.processing.normalize import add_mask, clean_lines
from gblist.processing.scan import scan_sources
from gblist.report.export import render_records, save_report
from gblist.storage.engine import Storage
from gblist.utils.duration import format_ttl, parse_ttl
from gblist.utils.logging import get_logger, set_verbosity

app = typer.Typer(
    help="Time-bounded IP/CIDR denylist kept in bucketed on-disk storage.",
    no_args_is_help=True,
)

log = get_logger(__name__)

DEFAULT_BUCKET = "default"
DEFAULT_TTL = "14d"


class OutputFormat(str, Enum):
    plain = "plain"
    dump = "dump"
    template = "template"
    csv = "csv"
    json = "json"


def _fail(message: str, code: int = 1) -> typer.Exit:
    typer.echo(message, err=True)
    return typer.Exit(code=code)


def _ttl(text: str) -> timedelta:
    try:
        ttl = parse_ttl(text)
    except ValueError as e:
        raise _fail(f"could not parse duration for banning time: {e}")
    if ttl <= timedelta(0):
        raise _fail(f"banning time {text!r} must be positive")
    try:
        expiry_for(ttl)
    except TTLError as e:
        raise _fail(f"banning time {text!r} is too long: {e.reason}")
    return ttl


def _open_storage(ctx: typer.Context, ttl: Optional[timedelta] = None) -> Storage:
    db = Path(ctx.obj["db"]).expanduser()
    try:
        if ttl is None:
            return Storage.open(db)
        return Storage.open(db, ttl=ttl)
    except StorageError as e:
        raise _fail(f"cannot open database {db}: {e}")


def _emit(
        records: List[Record],
        fmt: OutputFormat,
        template: Optional[str],
        output: Optional[Path],
) -> None:
    if fmt is OutputFormat.template and not template:
        raise _fail("--format template requires --template")
    try:
        if output is not None:
            path = save_report(records, output, fmt=fmt.value, template=template)
            typer.echo(f"Wrote {len(records)} records to {path}", err=True)
        else:
            typer.echo(render_records(records, fmt=fmt.value, template=template), nl=False)
    except (KeyError, IndexError, ValueError) as e:
        raise _fail(f"cannot render records: {e!r}")


@app.callback()
def main_callback(
        ctx: typer.Context,
        db: Path = typer.Option(
            Path(DEFAULT_DATABASE),
            "--db",
            "-d",
            envvar="GBLIST_DB",
            help="Full path of the database file.",
        ),
        bucket: str = typer.Option(
            DEFAULT_BUCKET,
            "--bucket",
            "-b",
            envvar="GBLIST_BUCKET",
            help="Name of the bucket the addresses are stored in.",
        ),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """
    Keep a denylist of IP addresses and CIDR blocks that expire on their own.

    Example:

        echo 192.0.2.7 | gblist add --ttl 2w --description sshd
        gblist list
        gblist --bucket web dump --format csv
    """
    set_verbosity(verbose)
    bucket = bucket.strip()
    if not bucket:
        raise _fail("invalid bucket")
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    ctx.obj["bucket"] = bucket


@app.command()
def add(
        ctx: typer.Context,
        addresses: Optional[List[str]] = typer.Argument(
            None,
            help="Addresses or CIDR blocks; read one per line from stdin when omitted.",
        ),
        ttl: str = typer.Option(
            DEFAULT_TTL,
            "--ttl",
            "-t",
            help="Banning time, e.g. 2w, 3d12h, 90m.",
        ),
        description: str = typer.Option("", "--description", help="Note stored with each record."),
        mask: bool = typer.Option(
            False,
            "--mask/--no-mask",
            help="Store bare addresses as /32 (IPv4) or /128 (IPv6) blocks.",
        ),
):
    """Add (or refresh) addresses in the bucket."""
    banning_time = _ttl(ttl)
    bucket = ctx.obj["bucket"]
    lines = addresses if addresses else typer.get_text_stream("stdin")

    added = rejected = 0
    with _open_storage(ctx, banning_time) as storage:
        for address in clean_lines(lines):
            if mask:
                address = add_mask(address)
            try:
                storage.add(bucket, make_record(address, banning_time, description, now=storage.clock()))
            except ValidationError as e:
                rejected += 1
                log.warning("%s", e.reason)
                continue
            except (StorageError, TTLError) as e:
                raise _fail(f"cannot add {address}: {e}")
            added += 1

    log.info("Added %d addresses to %s (%d rejected)", added, bucket, rejected)


@app.command()
def purge(
        ctx: typer.Context,
        addresses: List[str] = typer.Argument(..., help="Addresses or CIDR blocks to remove."),
):
    """Remove addresses from the bucket."""
    bucket = ctx.obj["bucket"]
    with _open_storage(ctx) as storage:
        try:
            storage.purge(bucket, *clean_lines(addresses))
        except (NoBucketError, StorageError) as e:
            raise _fail(str(e))


@app.command("list")
def list_(
        ctx: typer.Context,
        fmt: OutputFormat = typer.Option(OutputFormat.plain, "--format", "-f", help="Output format."),
        template: Optional[str] = typer.Option(
            None,
            "--template",
            help="Format string using {address}, {expires_at}, {description}, {network}.",
        ),
        output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout."),
):
    """Print the addresses that have not expired yet, purging expired ones."""
    with _open_storage(ctx) as storage:
        try:
            records = storage.list(ctx.obj["bucket"])
        except (NoBucketError, StorageError) as e:
            raise _fail(str(e))
    _emit(records, fmt, template, output)


@app.command()
def dump(
        ctx: typer.Context,
        fmt: OutputFormat = typer.Option(OutputFormat.dump, "--format", "-f", help="Output format."),
        template: Optional[str] = typer.Option(
            None,
            "--template",
            help="Format string using {address}, {expires_at}, {description}, {network}.",
        ),
        output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout."),
):
    """Print every stored record, expired or not."""
    with _open_storage(ctx) as storage:
        try:
            records = storage.dump(ctx.obj["bucket"])
        except (NoBucketError, StorageError) as e:
            raise _fail(str(e))
    _emit(records, fmt, template, output)


@app.command()
def fetch(
        ctx: typer.Context,
        address: str = typer.Argument(..., help="Exact address or CIDR text to look up."),
):
    """
    Show a single stored record without evicting it.

    Live records are followed by the time they have left, e.g. 13d23h59m12s.
    """
    address = address.strip()
    with _open_storage(ctx) as storage:
        try:
            record = storage.fetch(ctx.obj["bucket"], address)
        except (NoBucketError, StorageError) as e:
            raise _fail(str(e))

    if record is None:
        raise _fail(f"{address} not found")
    now = utcnow()
    if record.is_live(now):
        left = timedelta(seconds=int(record.remaining(now).total_seconds()))
        state = f"live {format_ttl(left)}"
    else:
        state = "expired"
    line = f"{record.address} {record.expires_at.isoformat()} {state}"
    if record.description:
        line = f"{line} {record.description}"
    typer.echo(line)


@app.command()
def query(
        ctx: typer.Context,
        address: str = typer.Argument(..., help="Address to check against the live denylist."),
):
    """
    Exit 0 if the address is currently denied, 1 otherwise.

    Matches either a live entry for the exact text or a live CIDR entry
    containing the address.
    """
    address = address.strip()
    bucket = ctx.obj["bucket"]
    with _open_storage(ctx) as storage:
        try:
            record = storage.fetch(bucket, address)
            if record is not None and record.is_live():
                typer.echo(record.address)
                return
            live = storage.list(bucket)
        except NoBucketError:
            raise typer.Exit(code=1)
        except StorageError as e:
            raise _fail(str(e))

    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        raise typer.Exit(code=1)

    for candidate in live:
        try:
            network = ipaddress.ip_network(candidate.address, strict=False)
        except ValueError:
            continue
        if ip in network:
            typer.echo(candidate.address)
            return
    raise typer.Exit(code=1)


@app.command()
def buckets(ctx: typer.Context):
    """List the bucket names present in the database."""
    with _open_storage(ctx) as storage:
        try:
            names = storage.buckets()
        except StorageError as e:
            raise _fail(str(e))
    for name in names:
        typer.echo(name)


@app.command()
def scan(
        config: Path = typer.Option(
            ...,
            "--config",
            "-c",
            exists=True,
            dir_okay=False,
            help="YAML configuration listing sources, patterns and whitelist.",
        ),
        print_: bool = typer.Option(
            False,
            "--print",
            "-p",
            help="Print the live addresses of the bucket after scanning.",
        ),
):
    """
    Extract addresses from log files and add them to the denylist.

    Example:

        gblist scan --config /etc/gblist/sshd.yaml --print
    """
    try:
        settings = build_settings(load_config(config))
    except ConfigError as e:
        raise _fail(str(e))

    try:
        storage = Storage.open(settings.database, ttl=settings.ttl)
    except StorageError as e:
        raise _fail(f"cannot open database {settings.database}: {e}")

    with storage:
        try:
            summary = scan_sources(settings, storage)
        except OSError as e:
            raise _fail(f"cannot read source: {e}")
        except (StorageError, TTLError) as e:
            raise _fail(str(e))
        typer.echo(
            f"Added {summary.added} of {summary.candidates} candidates "
            f"({summary.whitelisted} whitelisted, {summary.rejected} rejected)",
            err=True,
        )

        if print_:
            try:
                records = storage.list(settings.bucket)
            except NoBucketError:
                records = []
            except StorageError as e:
                raise _fail(str(e))
            if settings.template:
                typer.echo(render_records(records, fmt="template", template=settings.template), nl=False)
            else:
                typer.echo(render_records(records, fmt="plain"), nl=False)


def main() -> None:
    """Entry point for console_scripts."""
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Interrupted by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
