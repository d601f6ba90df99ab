# gblist/config.py

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Union

import yaml

from gblist.errors import ConfigError, TTLError
from gblist.models import expiry_for
from gblist.processing.scan import IPNetwork
from gblist.report.export import check_template
from gblist.utils.duration import parse_ttl
from gblist.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_DATABASE = "/tmp/gblist.db"
DEFAULT_SCAN_TTL = "21d"


@dataclass
class FilterConfig:
    """Raw log-scanner configuration as written in the YAML file."""
    sources: List[str] = field(default_factory=list)
    patterns: List[str] = field(default_factory=list)
    database: str = DEFAULT_DATABASE
    bucket: str = ""
    ttl: str = DEFAULT_SCAN_TTL
    network_whitelist: List[str] = field(default_factory=list)
    print_template: Optional[str] = None
    description: str = ""
    mask: bool = True


@dataclass
class Settings:
    """Validated, ready-to-use scanner settings."""
    sources: List[str]
    regexps: List[Pattern[str]]
    database: Path
    bucket: str
    ttl: timedelta
    whitelist: List[IPNetwork]
    template: Optional[str]
    description: str
    mask: bool


def _string_list(raw: Dict[str, Any], key: str) -> List[str]:
    value = raw.get(key) or []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list")
    return [str(item) for item in value]


def _flag(raw: Dict[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false, got {value!r}")
    return value


def parse_config(raw: Any) -> FilterConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("configuration must be a mapping")

    known = set(FilterConfig.__dataclass_fields__)
    unknown = sorted(set(raw) - known)
    if unknown:
        log.warning("Ignoring unknown configuration keys: %s", ", ".join(map(str, unknown)))

    return FilterConfig(
        sources=_string_list(raw, "sources"),
        patterns=_string_list(raw, "patterns"),
        database=str(raw.get("database") or DEFAULT_DATABASE),
        bucket=str(raw.get("bucket") or ""),
        ttl=str(raw.get("ttl") or DEFAULT_SCAN_TTL),
        network_whitelist=_string_list(raw, "network_whitelist"),
        print_template=raw.get("print_template") or None,
        description=str(raw.get("description") or ""),
        mask=_flag(raw, "mask", True),
    )


def load_config(path: Union[str, Path]) -> FilterConfig:
    """
    Read a YAML scanner configuration.

    Raises:
        ConfigError if the file is unreadable or not valid YAML
    """
    path = Path(path).expanduser().resolve()
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"cannot read configuration {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    log.info("Loaded configuration from %s", path)
    return parse_config(raw)


def build_settings(config: FilterConfig) -> Settings:
    """
    Compile and validate a FilterConfig.

    Raises:
        ConfigError naming the first offending value
    """
    sources = [s.strip() for s in config.sources if s.strip()]
    if not sources:
        raise ConfigError("no valid source defined")

    bucket = config.bucket.strip()
    if not bucket:
        raise ConfigError("invalid bucket")

    try:
        ttl = parse_ttl(config.ttl)
    except ValueError as e:
        raise ConfigError(f"invalid ttl {config.ttl!r}: {e}") from e
    if ttl <= timedelta(0):
        raise ConfigError(f"ttl {config.ttl!r} must be positive")
    try:
        expiry_for(ttl)
    except TTLError as e:
        raise ConfigError(f"ttl {config.ttl!r} is too long: {e.reason}") from e

    regexps = []
    for pattern in config.patterns:
        try:
            regexps.append(re.compile(pattern))
        except re.error as e:
            raise ConfigError(f"failed to compile regexp {pattern}: {e}") from e

    whitelist = []
    for network in config.network_whitelist:
        try:
            whitelist.append(ipaddress.ip_network(network.strip(), strict=False))
        except ValueError as e:
            raise ConfigError(f"failed to parse whitelisted CIDR {network}: {e}") from e

    template = config.print_template
    if template is not None:
        try:
            check_template(template)
        except ValueError as e:
            raise ConfigError(f"invalid print_template: {e}") from e

    return Settings(
        sources=sources,
        regexps=regexps,
        database=Path(config.database).expanduser(),
        bucket=bucket,
        ttl=ttl,
        whitelist=whitelist,
        template=template,
        description=config.description.strip(),
        mask=config.mask,
    )
