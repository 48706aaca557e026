"""Validation of label names, label values and resource quantities."""

from __future__ import annotations

import re
from fractions import Fraction

_LABEL_VALUE_MAX_LENGTH = 63
_QUALIFIED_NAME_MAX_LENGTH = 63
_DNS1123_SUBDOMAIN_MAX_LENGTH = 253

_QUALIFIED_NAME_FMT = r"([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]"
_QUALIFIED_NAME_RE = re.compile(_QUALIFIED_NAME_FMT)
_QUALIFIED_NAME_ERR = (
    "must consist of alphanumeric characters, '-', '_' or '.', and must start "
    "and end with an alphanumeric character"
)

_LABEL_VALUE_FMT = f"({_QUALIFIED_NAME_FMT})?"
_LABEL_VALUE_RE = re.compile(_LABEL_VALUE_FMT)
_LABEL_VALUE_ERR = (
    "a valid label must be an empty string or consist of alphanumeric "
    "characters, '-', '_' or '.', and must start and end with an alphanumeric "
    "character"
)

_DNS1123_LABEL_FMT = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS1123_SUBDOMAIN_FMT = rf"{_DNS1123_LABEL_FMT}(\.{_DNS1123_LABEL_FMT})*"
_DNS1123_SUBDOMAIN_RE = re.compile(_DNS1123_SUBDOMAIN_FMT)
_DNS1123_SUBDOMAIN_ERR = (
    "a lowercase RFC 1123 subdomain must consist of lower case alphanumeric "
    "characters, '-' or '.', and must start and end with an alphanumeric character"
)

_QUANTITY_RE = re.compile(r"([+-]?)(\d*)(?:\.(\d*))?(.*)", re.DOTALL)
_EXPONENT_RE = re.compile(r"[eE]([+-]?\d+)")

_BINARY_SUFFIXES = {"Ki": 1, "Mi": 2, "Gi": 3, "Ti": 4, "Pi": 5, "Ei": 6}
_DECIMAL_SUFFIXES = {
    "n": -9, "u": -6, "m": -3, "": 0,
    "k": 3, "M": 6, "G": 9, "T": 12, "P": 15, "E": 18,
}
_DECIMAL_BY_EXPONENT = {exp: suffix for suffix, exp in _DECIMAL_SUFFIXES.items()}
_BINARY_BY_POWER = {0: "", **{power: suffix for suffix, power in _BINARY_SUFFIXES.items()}}
_MAX_EXPONENT = 1000
_NANO = 10**9
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _regex_error(message: str, fmt: str) -> str:
    return f"{message} (regex used for validation is '{fmt}')"


def is_qualified_name(value: str) -> list[str]:
    """Return the reasons why value is not a qualified name; empty if it is one."""
    errors: list[str] = []
    parts = value.split("/")
    if len(parts) == 1:
        name = parts[0]
    elif len(parts) == 2:
        prefix, name = parts
        if not prefix:
            errors.append("prefix part must be non-empty")
        else:
            errors.extend("prefix part " + msg for msg in _dns1123_subdomain_errors(prefix))
    else:
        return [
            _regex_error(
                "a qualified name " + _QUALIFIED_NAME_ERR
                + " with an optional DNS subdomain prefix and '/'",
                _QUALIFIED_NAME_FMT,
            )
        ]

    if not name:
        errors.append("name part must be non-empty")
    elif len(name) > _QUALIFIED_NAME_MAX_LENGTH:
        errors.append(f"name part must be no more than {_QUALIFIED_NAME_MAX_LENGTH} characters")
    if not _QUALIFIED_NAME_RE.fullmatch(name):
        errors.append(_regex_error("name part " + _QUALIFIED_NAME_ERR, _QUALIFIED_NAME_FMT))
    return errors


def _dns1123_subdomain_errors(value: str) -> list[str]:
    errors = []
    if len(value) > _DNS1123_SUBDOMAIN_MAX_LENGTH:
        errors.append(f"must be no more than {_DNS1123_SUBDOMAIN_MAX_LENGTH} characters")
    if not _DNS1123_SUBDOMAIN_RE.fullmatch(value):
        errors.append(_regex_error(_DNS1123_SUBDOMAIN_ERR, _DNS1123_SUBDOMAIN_FMT))
    return errors


def is_valid_label_value(value: str) -> list[str]:
    """Return the reasons why value is not a label value; empty if it is one."""
    errors = []
    if len(value) > _LABEL_VALUE_MAX_LENGTH:
        errors.append(f"must be no more than {_LABEL_VALUE_MAX_LENGTH} characters")
    if not _LABEL_VALUE_RE.fullmatch(value):
        errors.append(_regex_error(_LABEL_VALUE_ERR, _LABEL_VALUE_FMT))
    return errors


def _parse(value: str) -> tuple[int, str]:
    """Parse a quantity into (amount in nano units, format)."""
    match = _QUANTITY_RE.fullmatch(value)
    if not match:
        raise ValueError(f"quantities must match the regular expression: {value!r}")
    sign, whole, frac, suffix = match.groups()
    if not whole and not frac:
        raise ValueError(f"quantities must match the regular expression: {value!r}")

    amount = Fraction(f"{whole or '0'}.{frac or '0'}")
    if suffix in _BINARY_SUFFIXES:
        fmt = "binary"
        amount *= 1024 ** _BINARY_SUFFIXES[suffix]
    elif suffix in _DECIMAL_SUFFIXES:
        fmt = "decimal"
        amount *= Fraction(10) ** _DECIMAL_SUFFIXES[suffix]
    else:
        exp_match = _EXPONENT_RE.fullmatch(suffix)
        if not exp_match:
            raise ValueError(f"unable to parse quantity's suffix: {value!r}")
        exponent = int(exp_match.group(1))
        if abs(exponent) > _MAX_EXPONENT:
            raise ValueError(f"quantity exponent out of range: {value!r}")
        fmt = "exponent"
        amount *= Fraction(10) ** exponent

    nanos = amount * _NANO
    units = nanos.numerator // nanos.denominator
    if units != nanos:
        units += 1  # round away from zero to nano precision
    if sign == "-":
        units = -units
    return units, fmt


def _format_decimal(nanos: int, exponent_style: bool) -> str:
    if nanos == 0:
        return "0"
    sign = "-" if nanos < 0 else ""
    magnitude = abs(nanos)
    for exponent in range(18, -12, -3):
        scale = 10 ** (exponent + 9)
        if magnitude % scale == 0:
            mantissa = magnitude // scale
            if exponent_style:
                suffix = f"e{exponent}" if exponent else ""
            else:
                suffix = _DECIMAL_BY_EXPONENT[exponent]
            return f"{sign}{mantissa}{suffix}"
    raise AssertionError("nano units are always divisible by 1")


def parse_quantity(value: str) -> str:
    """Parse a resource quantity and return its canonical string form."""
    nanos, fmt = _parse(value)
    if fmt == "binary":
        if nanos % _NANO == 0 and abs(nanos) >= 1024 * _NANO:
            whole = nanos // _NANO
            sign = "-" if whole < 0 else ""
            magnitude = abs(whole)
            power = 0
            while power < 6 and magnitude % 1024 == 0:
                magnitude //= 1024
                power += 1
            return f"{sign}{magnitude}{_BINARY_BY_POWER[power]}"
        return _format_decimal(nanos, exponent_style=False)
    return _format_decimal(nanos, exponent_style=(fmt == "exponent"))


def quantity_as_int(value: str) -> int:
    """Return a quantity as a 64-bit integer; raise ValueError if it is not one."""
    nanos, _ = _parse(value)
    if nanos % _NANO:
        raise ValueError(f"quantity {value!r} is not an integer")
    result = nanos // _NANO
    if not _INT64_MIN <= result <= _INT64_MAX:
        raise ValueError(f"quantity {value!r} does not fit in 64 bits")
    return result