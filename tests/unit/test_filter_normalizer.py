"""
Unit tests -- filter normalizer: dedupe, exclusivity, warnings, cascade.
"""
from src.core.errors import InvalidFilterKind, InvalidFilterOperator, InvalidFilterValue
from src.filters.normalizer import normalize
from src.filters.spec import FilterKind, FilterOperator, FilterSpec, Selection


def _raw(kind, values, operator="in", **extra) -> dict:
    return {"kind": kind, "operator": operator, "values": values, **extra}


# ── Canonical output ─────────────────────────────────────

def test_duplicate_triples_collapse():
    result = normalize([
        _raw("cluster", ["a", "b"]),
        _raw("cluster", ["b", "a", "a"]),
    ])
    [spec] = result.of_kind(FilterKind.CLUSTER)
    assert spec.values == ("a", "b")
    assert result.warnings == []


def test_values_stripped_and_blank_dropped():
    result = normalize([_raw("cluster", [" a ", "", None, "b"])])
    assert result.values_for(FilterKind.CLUSTER) == ("a", "b")


def test_scalar_value_accepted():
    result = normalize([_raw("account", "123", operator="equals")])
    assert result.first_value(FilterKind.ACCOUNT) == "123"


def test_different_operators_stay_separate():
    result = normalize([
        _raw("cluster", ["a"]),
        _raw("cluster", ["b"], operator="not_in"),
    ])
    ops = [s.operator for s in result.of_kind(FilterKind.CLUSTER)]
    assert ops == [FilterOperator.IN, FilterOperator.NOT_IN]


def test_same_set_in_different_order_has_same_signature():
    a = normalize([_raw("cluster", ["x", "y"])]).specs[0]
    b = normalize([_raw("cluster", ["y", "x"])]).specs[0]
    assert a.values != b.values
    assert a.signature() == b.signature()


def test_filter_spec_input_accepted():
    spec = FilterSpec(kind=FilterKind.CLUSTER, operator=FilterOperator.IN, values=("a",))
    result = normalize([spec])
    assert result.specs[0].values == ("a",)


# ── Exclusivity ──────────────────────────────────────────

def test_exclusive_kind_last_value_wins():
    result = normalize([
        _raw("status", ["healthy"], operator="equals"),
        _raw("status", ["unhealthy"], operator="equals"),
    ])
    assert result.values_for(FilterKind.STATUS) == ("unhealthy",)


def test_exclusive_last_value_wins_even_when_seen_before():
    result = normalize([
        _raw("provider", ["AWS_MSK"], operator="equals"),
        _raw("provider", ["CONFLUENT_CLOUD"], operator="equals"),
        _raw("provider", ["AWS_MSK"], operator="equals"),
    ])
    assert result.values_for(FilterKind.PROVIDER) == ("AWS_MSK",)


def test_non_exclusive_kind_accumulates():
    result = normalize([_raw("cluster", ["a"]), _raw("cluster", ["b"])])
    assert result.values_for(FilterKind.CLUSTER) == ("a", "b")


# ── Recoverable warnings ─────────────────────────────────

def test_unknown_kind_dropped_with_warning():
    result = normalize([_raw("region", ["us-east-1"]), _raw("cluster", ["a"])])
    assert isinstance(result.warnings[0], InvalidFilterKind)
    assert result.values_for(FilterKind.CLUSTER) == ("a",)


def test_invalid_operator_dropped_rest_still_applies():
    result = normalize([
        _raw("status", ["healthy"], operator="in"),
        _raw("cluster", ["a"]),
    ])
    [warning] = result.warnings
    assert isinstance(warning, InvalidFilterOperator)
    assert warning.kind == "status"
    assert warning.allowed == ["equals"]
    assert result.of_kind(FilterKind.STATUS) == []
    assert result.values_for(FilterKind.CLUSTER) == ("a",)


def test_unknown_operator_name():
    result = normalize([_raw("cluster", ["a"], operator="between")])
    assert isinstance(result.warnings[0], InvalidFilterOperator)
    assert result.specs == []


def test_value_outside_choices_dropped():
    result = normalize([_raw("status", ["degraded"], operator="equals")])
    assert isinstance(result.warnings[0], InvalidFilterValue)
    assert result.specs == []


def test_custom_filter_requires_attribute():
    result = normalize([
        _raw("custom", ["us-east-1"], operator="equals"),
        _raw("custom", ["us-east-1"], operator="equals", attribute="aws.region"),
    ])
    assert len(result.warnings) == 1
    [spec] = result.of_kind(FilterKind.CUSTOM)
    assert spec.attribute == "aws.region"


# ── Dependent filter cascade ─────────────────────────────

def test_topic_without_cluster_collapses_to_empty():
    result = normalize([_raw("topic", ["orders"])])
    [spec] = result.of_kind(FilterKind.TOPIC)
    assert spec.is_empty
    assert result.values_for(FilterKind.TOPIC) == ()


def test_topic_with_cluster_kept():
    result = normalize([_raw("cluster", ["a"]), _raw("topic", ["orders"])])
    assert result.values_for(FilterKind.TOPIC) == ("orders",)


def test_selection_expands_to_raw_filters():
    selection = Selection(provider="AWS_MSK", accountId="123", clusters=["a"], topics=["t"],
                          status="unhealthy", search="prod")
    result = normalize(selection.to_raw_filters())
    assert result.first_value(FilterKind.PROVIDER) == "AWS_MSK"
    assert result.first_value(FilterKind.ACCOUNT) == "123"
    assert [s.kind for s in result.specs] == [
        FilterKind.PROVIDER, FilterKind.ACCOUNT, FilterKind.CLUSTER,
        FilterKind.TOPIC, FilterKind.STATUS, FilterKind.SEARCH,
    ]
    assert result.warnings == []


def test_selection_with_empty_clusters_drops_topics():
    selection = Selection(provider="AWS_MSK", accountId="123", clusters=[], topics=["t"])
    result = normalize(selection.to_raw_filters())
    assert result.values_for(FilterKind.TOPIC) == ()
