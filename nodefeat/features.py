"""Feature data model, well-known names and node taints."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .validation import is_qualified_name, is_valid_label_value

FEATURE_LABEL_NS = "feature.node.kubernetes.io"
FEATURE_LABEL_SUB_NS_SUFFIX = "." + FEATURE_LABEL_NS
PROFILE_LABEL_NS = "profile.node.kubernetes.io"
PROFILE_LABEL_SUB_NS_SUFFIX = "." + PROFILE_LABEL_NS
TAINT_NS = FEATURE_LABEL_NS
TAINT_SUB_NS_SUFFIX = "." + TAINT_NS
EXTENDED_RESOURCE_NS = FEATURE_LABEL_NS
EXTENDED_RESOURCE_SUB_NS_SUFFIX = "." + EXTENDED_RESOURCE_NS

ANNOTATION_NS = "nfd.node.kubernetes.io"
FEATURE_LABELS_ANNOTATION = ANNOTATION_NS + "/feature-labels"
EXTENDED_RESOURCE_ANNOTATION = ANNOTATION_NS + "/extended-resources"
MASTER_VERSION_ANNOTATION = ANNOTATION_NS + "/master.version"
WORKER_VERSION_ANNOTATION = ANNOTATION_NS + "/worker.version"
NODE_TAINTS_ANNOTATION = ANNOTATION_NS + "/taints"
NODE_FEATURE_OBJ_NODE_NAME_LABEL = ANNOTATION_NS + "/node-name"

RULE_BACKREF_DOMAIN = "rule"
RULE_BACKREF_FEATURE = "matched"

TAINT_EFFECTS = ("NoSchedule", "PreferNoSchedule", "NoExecute")


@dataclass
class AttributeFeatureSet:
    """A set of named attribute values of one feature."""

    elements: dict[str, str] = field(default_factory=dict)


@dataclass
class Features:
    """Features discovered on a node, keyed by "domain.feature"."""

    flags: dict[str, set[str]] = field(default_factory=dict)
    attributes: dict[str, AttributeFeatureSet] = field(default_factory=dict)
    instances: dict[str, list[dict[str, str]]] = field(default_factory=dict)

    def insert_attribute_features(
        self, domain: str, feature: str, values: Mapping[str, str] | None
    ) -> None:
        """Merge values into the attribute feature domain.feature."""
        key = f"{domain}.{feature}"
        feature_set = self.attributes.setdefault(key, AttributeFeatureSet())
        feature_set.elements.update(values or {})


@dataclass(frozen=True)
class Taint:
    """A node taint."""

    key: str
    value: str = ""
    effect: str = ""

    def to_string(self) -> str:
        """Return the taint in key=value:effect form."""
        if not self.effect:
            if not self.value:
                return self.key
            return f"{self.key}={self.value}:"
        if not self.value:
            return f"{self.key}:{self.effect}"
        return f"{self.key}={self.value}:{self.effect}"


@dataclass
class RuleOutput:
    """What a feature rule produced for a node."""

    labels: dict[str, str] = field(default_factory=dict)
    extended_resources: dict[str, str] = field(default_factory=dict)
    taints: list[Taint] = field(default_factory=list)
    vars: dict[str, str] = field(default_factory=dict)


def _parse_taint(spec: str) -> Taint:
    value = ""
    effect = ""
    parts = spec.split(":")
    if len(parts) == 1:
        key = parts[0]
    elif len(parts) == 2:
        effect = parts[1]
        if effect not in TAINT_EFFECTS:
            raise ValueError(f"invalid taint effect: {effect}, unsupported taint effect")
        key_value = parts[0].split("=")
        if len(key_value) > 2:
            raise ValueError(f"invalid taint spec: {spec}")
        key = key_value[0]
        if len(key_value) == 2:
            value = key_value[1]
            errors = is_valid_label_value(value)
            if errors:
                raise ValueError(f"invalid taint spec: {spec}, {'; '.join(errors)}")
    else:
        raise ValueError(f"invalid taint spec: {spec}")

    errors = is_qualified_name(key)
    if errors:
        raise ValueError(f"invalid taint spec: {spec}, {'; '.join(errors)}")
    return Taint(key=key, value=value, effect=effect)


def parse_taints(spec: Iterable[str]) -> tuple[list[Taint], list[Taint]]:
    """Parse taint specs into (taints to add, taints to remove).

    A spec ending in "-" names a taint to remove.
    """
    to_add: list[Taint] = []
    to_remove: list[Taint] = []
    seen: set[tuple[str, str]] = set()
    for taint_spec in spec:
        if taint_spec.endswith("-"):
            taint = _parse_taint(taint_spec[:-1])
            to_remove.append(Taint(key=taint.key, effect=taint.effect))
            continue
        taint = _parse_taint(taint_spec)
        if not taint.effect:
            raise ValueError(f"invalid taint spec: {taint_spec}")
        if (taint.effect, taint.key) in seen:
            raise ValueError(f"duplicated taints with the same key and effect: {taint}")
        seen.add((taint.effect, taint.key))
        to_add.append(taint)
    return to_add, to_remove