import pytest

from nodefeat.features import (
    RULE_BACKREF_DOMAIN,
    RULE_BACKREF_FEATURE,
    AttributeFeatureSet,
    Features,
    RuleOutput,
    Taint,
    parse_taints,
)


def test_insert_attribute_features_creates_set():
    features = Features()
    features.insert_attribute_features(RULE_BACKREF_DOMAIN, RULE_BACKREF_FEATURE, {"a": "1"})
    assert features.attributes["rule.matched"].elements == {"a": "1"}


def test_insert_attribute_features_merges():
    features = Features(attributes={"d.f": AttributeFeatureSet({"a": "1", "b": "2"})})
    features.insert_attribute_features("d", "f", {"b": "3", "c": "4"})
    assert features.attributes["d.f"].elements == {"a": "1", "b": "3", "c": "4"}


def test_insert_attribute_features_none_values():
    features = Features()
    features.insert_attribute_features("d", "f", None)
    assert features.attributes["d.f"].elements == {}


def test_taint_to_string_forms():
    assert Taint("example.com/k").to_string() == "example.com/k"
    assert Taint("example.com/k", "v", "NoSchedule").to_string() == "example.com/k=v:NoSchedule"
    assert Taint("example.com/k", effect="NoExecute").to_string() == "example.com/k:NoExecute"


@pytest.mark.parametrize(
    "taint",
    [
        Taint("example.com/k", "v", "NoSchedule"),
        Taint("example.com/k", "", "PreferNoSchedule"),
        Taint("feature.node.kubernetes.io/x", "val-1", "NoExecute"),
    ],
)
def test_taint_round_trip(taint):
    added, removed = parse_taints([taint.to_string()])
    assert added == [taint]
    assert removed == []


def test_parse_taints_add_and_remove():
    added, removed = parse_taints(
        ["example.com/k=v:NoSchedule", "example.com/x-", "example.com/y:NoExecute-"]
    )
    assert added == [Taint("example.com/k", "v", "NoSchedule")]
    assert removed == [Taint("example.com/x"), Taint("example.com/y", effect="NoExecute")]


@pytest.mark.parametrize(
    "spec",
    [
        "example.com/k=v",
        "example.com/k",
        "example.com/k=v:Bogus",
        "a:b:c",
        "example.com/k=a=b:NoSchedule",
        "example.com/k=-bad-:NoSchedule",
        "-invalid-key-:NoSchedule",
    ],
)
def test_parse_taints_errors(spec):
    with pytest.raises(ValueError):
        parse_taints([spec])


def test_parse_taints_duplicates():
    with pytest.raises(ValueError, match="duplicated"):
        parse_taints(["example.com/k=a:NoSchedule", "example.com/k=b:NoSchedule"])


def test_parse_taints_same_key_other_effect():
    added, _ = parse_taints(["example.com/k:NoSchedule", "example.com/k:NoExecute"])
    assert [t.effect for t in added] == ["NoSchedule", "NoExecute"]


def test_rule_output_defaults_independent():
    first = RuleOutput()
    second = RuleOutput()
    first.labels["a"] = "1"
    assert second.labels == {}