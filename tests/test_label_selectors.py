import pytest

from label_selectors import matches, to_selector_string, validate


def test_bare_mapping_is_match_labels():
    assert to_selector_string({"role": "worker", "zone": "a"}) == "role=worker,zone=a"
    assert matches({"role": "worker"}, {"role": "worker", "zone": "a"})
    assert not matches({"role": "worker"}, {"role": "master"})


def test_match_expressions_render():
    selector = {
        "matchLabels": {"pool": "gpu"},
        "matchExpressions": [
            {"key": "zone", "operator": "In", "values": ["a", "b"]},
            {"key": "tier", "operator": "NotIn", "values": ["edge"]},
            {"key": "managed", "operator": "Exists"},
            {"key": "legacy", "operator": "DoesNotExist"},
        ],
    }
    assert to_selector_string(selector) == "pool=gpu,zone in (a,b),tier notin (edge),managed,!legacy"


@pytest.mark.parametrize(
    "labels, expected",
    [
        ({"pool": "gpu", "zone": "a", "managed": "yes"}, True),
        ({"pool": "gpu", "zone": "c", "managed": "yes"}, False),
        ({"pool": "gpu", "zone": "a", "tier": "edge", "managed": "yes"}, False),
        ({"pool": "gpu", "zone": "a"}, False),
        ({"pool": "gpu", "zone": "a", "managed": "yes", "legacy": "1"}, False),
    ],
)
def test_match_expressions_evaluate(labels, expected):
    selector = {
        "matchLabels": {"pool": "gpu"},
        "matchExpressions": [
            {"key": "zone", "operator": "In", "values": ["a", "b"]},
            {"key": "tier", "operator": "NotIn", "values": ["edge"]},
            {"key": "managed", "operator": "Exists"},
            {"key": "legacy", "operator": "DoesNotExist"},
        ],
    }
    assert matches(selector, labels) is expected


def test_unknown_operator_is_rejected():
    selector = {"matchExpressions": [{"key": "zone", "operator": "Gt", "values": ["1"]}]}
    with pytest.raises(ValueError):
        matches(selector, {"zone": "2"})
    with pytest.raises(ValueError):
        to_selector_string(selector)


def test_expression_without_key_is_rejected():
    selector = {"matchExpressions": [{"operator": "Exists"}]}
    with pytest.raises(ValueError, match="needs a key"):
        matches(selector, {"zone": "a"})
    with pytest.raises(ValueError, match="needs a key"):
        validate(selector)
