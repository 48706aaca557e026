"""Configuration of the master: defaults, config file, overrides and arguments."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable

import yaml

log = logging.getLogger(__name__)

_DURATION_PART_RE = re.compile(r"(\d*)(?:\.(\d*))?(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS_NS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_INSTANCE_RE = re.compile(r"([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "1h30m", "20s" or "300ms"."""
    rest = text
    sign = 1
    if rest[:1] in ("+", "-"):
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")
    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART_RE.match(rest, pos)
        if not match or (not match.group(1) and not match.group(2)):
            raise ValueError(f"invalid duration {text!r}")
        whole, frac, unit = match.groups()
        total += Fraction(f"{whole or '0'}.{frac or '0'}") * _DURATION_UNITS_NS[unit]
        pos = match.end()
    return timedelta(microseconds=sign * round(total / 1000))


@dataclass
class LeaderElectionConfig:
    """Timings of leader election."""

    lease_duration: timedelta = timedelta(seconds=15)
    renew_deadline: timedelta = timedelta(seconds=10)
    retry_period: timedelta = timedelta(seconds=2)


@dataclass
class NFDConfig:
    """Configuration settings of the master."""

    deny_label_ns: set[str] = field(default_factory=set)
    extra_label_ns: set[str] = field(default_factory=set)
    label_white_list: re.Pattern[str] = field(default_factory=lambda: re.compile(""))
    no_publish: bool = False
    resource_labels: set[str] = field(default_factory=set)
    enable_taints: bool = False
    resync_period: timedelta = timedelta(hours=1)
    leader_election: LeaderElectionConfig = field(default_factory=LeaderElectionConfig)
    nfd_api_parallelism: int = 10


@dataclass
class ConfigOverrides:
    """Command line values that take precedence over the configuration."""

    deny_label_ns: set[str] | None = None
    extra_label_ns: set[str] | None = None
    label_white_list: re.Pattern[str] | None = None
    resource_labels: set[str] | None = None
    enable_taints: bool | None = None
    no_publish: bool | None = None
    resync_period: timedelta | None = None
    nfd_api_parallelism: int | None = None


@dataclass
class Args:
    """Command line arguments of the master."""

    ca_file: str = ""
    cert_file: str = ""
    config_file: str = ""
    instance: str = ""
    key_file: str = ""
    kubeconfig: str = ""
    crd_controller: bool = False
    enable_node_feature_api: bool = False
    port: int = 0
    prune: bool = False
    verify_node_name: bool = False
    options: str = ""
    enable_leader_election: bool = False
    metrics_port: int = 0
    overrides: ConfigOverrides = field(default_factory=ConfigOverrides)


def default_config() -> NFDConfig:
    """Return a fresh configuration with the default settings."""
    return NFDConfig()


def _string_set(key: str, value: Any) -> set[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"{key}: expected a list of strings, got {value!r}")
    return set(value)


def _regexp(key: str, value: Any) -> re.Pattern[str]:
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected a string, got {value!r}")
    try:
        return re.compile(value)
    except re.error as exc:
        raise ValueError(f"{key}: invalid regular expression {value!r}: {exc}") from exc


def _bool(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{key}: expected a boolean, got {value!r}")
    return value


def _int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key}: expected an integer, got {value!r}")
    return value


def _duration(key: str, value: Any) -> timedelta:
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected a duration string, got {value!r}")
    return parse_duration(value)


_FIELDS: dict[str, tuple[str, Callable[[str, Any], Any]]] = {
    "denylabelns": ("deny_label_ns", _string_set),
    "extralabelns": ("extra_label_ns", _string_set),
    "labelwhitelist": ("label_white_list", _regexp),
    "nopublish": ("no_publish", _bool),
    "resourcelabels": ("resource_labels", _string_set),
    "enabletaints": ("enable_taints", _bool),
    "resyncperiod": ("resync_period", _duration),
    "nfdapiparallelism": ("nfd_api_parallelism", _int),
}
_LEADER_FIELDS = {
    "leaseduration": "lease_duration",
    "renewdeadline": "renew_deadline",
    "retryperiod": "retry_period",
}


def _require_mapping(data: Any) -> dict:
    if not isinstance(data, dict):
        raise ValueError(f"expected a mapping, got {data!r}")
    return data


def _apply_leader(target: LeaderElectionConfig, data: Any) -> None:
    for key, value in _require_mapping(data).items():
        name = _LEADER_FIELDS.get(str(key).lower())
        if name is not None and value is not None:
            setattr(target, name, _duration(str(key), value))


def _apply(target: NFDConfig, data: Any) -> None:
    if data is None:
        return
    for key, value in _require_mapping(data).items():
        if value is None:
            continue
        lowered = str(key).lower()
        if lowered == "leaderelection":
            _apply_leader(target.leader_election, value)
        elif lowered in _FIELDS:
            name, convert = _FIELDS[lowered]
            setattr(target, name, convert(str(key), value))


def _load_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(str(exc)) from exc


def load_config(
    path: str = "", overrides_text: str = "", overrides: ConfigOverrides | None = None
) -> NFDConfig:
    """Build the configuration from defaults, a config file and overrides.

    A missing config file is not an error. overrides_text is YAML whose
    settings take precedence over the file; overrides take precedence over both.
    """
    config = default_config()

    if path:
        try:
            data = Path(path).read_text()
        except FileNotFoundError:
            log.info("config file %s not found, using defaults", path)
        except OSError as exc:
            raise OSError(f"error reading config file: {exc}") from exc
        else:
            try:
                _apply(config, _load_yaml(data))
            except ValueError as exc:
                raise ValueError(f"failed to parse config file: {exc}") from exc
            log.info("configuration file %s parsed", path)

    try:
        _apply(config, _load_yaml(overrides_text or ""))
    except ValueError as exc:
        raise ValueError(f"failed to parse -options: {exc}") from exc

    if overrides is not None:
        for override in fields(overrides):
            value = getattr(overrides, override.name)
            if value is None:
                continue
            if isinstance(value, (set, frozenset)):
                value = set(value)
            setattr(config, override.name, value)

    if config.nfd_api_parallelism <= 0:
        raise ValueError(
            "the maximum number of concurrent labelers should be a non-zero positive number"
        )
    return config


def validate_args(args: Args) -> None:
    """Raise ValueError if the instance name or the TLS arguments are invalid."""
    if args.instance and not _INSTANCE_RE.fullmatch(args.instance):
        raise ValueError(
            f"invalid -instance {args.instance!r}: instance name must start and end "
            "with an alphanumeric character and may only contain alphanumerics, "
            "`-`, `_` or `.`"
        )
    if args.cert_file or args.key_file or args.ca_file:
        if not args.cert_file:
            raise ValueError("-cert-file needs to be specified alongside -key-file and -ca-file")
        if not args.key_file:
            raise ValueError("-key-file needs to be specified alongside -cert-file and -ca-file")
        if not args.ca_file:
            raise ValueError("-ca-file needs to be specified alongside -cert-file and -key-file")