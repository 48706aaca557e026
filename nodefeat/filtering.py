"""Filtering and namespacing of labels, taints and extended resources."""

from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .features import (
    EXTENDED_RESOURCE_NS,
    EXTENDED_RESOURCE_SUB_NS_SUFFIX,
    FEATURE_LABEL_NS,
    FEATURE_LABEL_SUB_NS_SUFFIX,
    PROFILE_LABEL_NS,
    PROFILE_LABEL_SUB_NS_SUFFIX,
    TAINT_NS,
    TAINT_SUB_NS_SUFFIX,
    Features,
    Taint,
)
from .validation import is_qualified_name, is_valid_label_value, parse_quantity

if TYPE_CHECKING:
    from .config import NFDConfig

log = logging.getLogger(__name__)

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


@dataclass
class DeniedNamespaces:
    """Denied label namespaces: exact names and wildcard suffixes."""

    normal: set[str] = field(default_factory=set)
    wildcard: set[str] = field(default_factory=set)


def add_ns(src: str, ns_to_add: str) -> str:
    """Prefix src with ns_to_add unless it already has a namespace."""
    if "/" in src:
        return src
    joined = "/".join(part for part in (ns_to_add, src) if part)
    return posixpath.normpath(joined) if joined else ""


def split_ns(fullname: str) -> tuple[str, str]:
    """Split a name into its namespace and name parts."""
    ns, sep, name = fullname.partition("/")
    if sep:
        return ns, name
    return "", fullname


def string_to_ns_names(cslist: str, ns: str) -> list[str]:
    """Turn a comma-separated list of names into fully namespaced names."""
    if not cslist:
        return []
    return [add_ns(name, ns) for name in cslist.split(",")]


def preprocess_denied_namespaces(denied_ns: Iterable[str]) -> tuple[set[str], set[str]]:
    """Split denied namespaces into (normal, wildcard) sets."""
    normal: set[str] = set()
    wildcard: set[str] = set()
    for ns in denied_ns:
        if ns.startswith("*"):
            wildcard.add(ns.lstrip("*"))
        else:
            normal.add(ns)
    return normal, wildcard


def is_namespace_denied(
    label_ns: str, wildcard_denied_ns: Iterable[str], normal_denied_ns: Iterable[str]
) -> bool:
    """Tell whether label_ns is denied exactly or by a wildcard suffix."""
    if label_ns in set(normal_denied_ns):
        return True
    return any(label_ns.endswith(suffix) for suffix in wildcard_denied_ns)


def get_dynamic_value(value: str, features: Features | None) -> str:
    """Resolve a value of the form "@domain.feature.element" from features."""
    split = value[1:].split(".", 2)
    if len(split) != 3:
        raise ValueError(f"value {value} is not in the form of '@domain.feature.element'")
    feature_name = f"{split[0]}.{split[1]}"
    element_name = split[2]
    attributes = features.attributes if features is not None else {}
    feature_set = attributes.get(feature_name)
    if feature_set is None:
        raise ValueError(f"feature {feature_name} not found")
    if element_name not in feature_set.elements:
        raise ValueError(f"element {element_name} not found on feature {feature_name}")
    return feature_set.elements[element_name]


def filter_feature_label(
    name: str,
    value: str,
    features: Features | None,
    config: NFDConfig,
    denied: DeniedNamespaces,
) -> str:
    """Return the final value of a label; raise ValueError if it is rejected."""
    errors = is_qualified_name(name)
    if errors:
        raise ValueError(f"invalid name {name!r}: {'; '.join(errors)}")

    ns, base = split_ns(name)
    if (
        ns not in (FEATURE_LABEL_NS, PROFILE_LABEL_NS)
        and not ns.endswith(FEATURE_LABEL_SUB_NS_SUFFIX)
        and not ns.endswith(PROFILE_LABEL_SUB_NS_SUFFIX)
    ):
        if is_namespace_denied(ns, denied.wildcard, denied.normal) and ns not in config.extra_label_ns:
            raise ValueError(f"namespace {ns!r} is not allowed")

    whitelist = config.label_white_list
    if not whitelist.search(base):
        raise ValueError(f"{base} ({name}) does not match the whitelist ({whitelist.pattern})")

    filtered = get_dynamic_value(value, features) if value.startswith("@") else value

    errors = is_valid_label_value(filtered)
    if errors:
        raise ValueError(f"invalid value {filtered!r}: {'; '.join(errors)}")
    return filtered


def _is_int(value: str) -> bool:
    return bool(_INT_RE.fullmatch(value)) and _INT64_MIN <= int(value) <= _INT64_MAX


def filter_feature_labels(
    labels: Mapping[str, str],
    features: Features | None,
    config: NFDConfig,
    denied: DeniedNamespaces,
) -> tuple[dict[str, str], dict[str, str]]:
    """Filter labels and move the resource labels out as extended resources.

    Returns (labels, extended resources).
    """
    out_labels: dict[str, str] = {}
    for raw_name, value in labels.items():
        name = add_ns(raw_name, FEATURE_LABEL_NS)
        try:
            out_labels[name] = filter_feature_label(name, value, features, config, denied)
        except ValueError as exc:
            log.error("ignoring label %s=%s: %s", name, value, exc)

    extended_resources: dict[str, str] = {}
    for resource_name in config.resource_labels:
        resource_name = add_ns(resource_name, FEATURE_LABEL_NS)
        if resource_name not in out_labels:
            continue
        value = out_labels[resource_name]
        if not _is_int(value):
            log.error(
                "bad label value encountered for extended resource %s=%s", resource_name, value
            )
            continue
        extended_resources[resource_name] = value
        del out_labels[resource_name]

    return out_labels, extended_resources


def filter_taint(taint: Taint) -> None:
    """Raise ValueError if the taint key has a disallowed namespace."""
    ns, _ = split_ns(taint.key)
    if not ns:
        raise ValueError("taint keys without namespace (prefix/) are not allowed")
    if (
        ns != TAINT_NS
        and not ns.endswith(TAINT_SUB_NS_SUFFIX)
        and (ns == "kubernetes.io" or ns.endswith(".kubernetes.io"))
    ):
        raise ValueError(f"prefix {ns!r} is not allowed for taint key")


def filter_taints(taints: Iterable[Taint] | None) -> list[Taint]:
    """Return the taints that pass filter_taint."""
    out: list[Taint] = []
    for taint in taints or ():
        try:
            filter_taint(taint)
        except ValueError as exc:
            log.error("ignoring taint %s: %s", taint, exc)
        else:
            out.append(taint)
    return out


def filter_extended_resource(name: str, value: str, features: Features | None) -> str:
    """Return the canonical capacity of an extended resource or raise ValueError."""
    ns, _ = split_ns(name)
    if ns != EXTENDED_RESOURCE_NS and not ns.startswith(EXTENDED_RESOURCE_SUB_NS_SUFFIX):
        if ns == "kubernetes.io" or ns.endswith(".kubernetes.io"):
            raise ValueError(f"namespace {ns!r} is not allowed")

    if value.startswith("@"):
        element = get_dynamic_value(value, features)
        try:
            return parse_quantity(element)
        except ValueError as exc:
            raise ValueError(f"invalid value {element} (from {value}): {exc}") from exc
    try:
        return parse_quantity(value)
    except ValueError as exc:
        raise ValueError(f"invalid value {value}: {exc}") from exc


def filter_extended_resources(
    features: Features | None, extended_resources: Mapping[str, str]
) -> dict[str, str]:
    """Return the valid extended resources with their canonical capacities."""
    out: dict[str, str] = {}
    for raw_name, value in extended_resources.items():
        name = add_ns(raw_name, EXTENDED_RESOURCE_NS)
        try:
            out[name] = filter_extended_resource(name, value, features)
        except ValueError as exc:
            log.error("failed to create extended resource %s=%s: %s", name, value, exc)
    return out