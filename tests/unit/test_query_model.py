"""
Unit tests -- QueryModel structure, rendering and canonical form.
"""
import datetime

import pytest

from src.core.errors import InvalidQueryModel
from src.query.model import (
    UNBOUNDED,
    Condition,
    Dimension,
    Operator,
    Predicate,
    PredicateGroup,
    Projection,
    QueryModel,
    SubqueryPredicate,
    TimeWindow,
)

CLUSTER = Dimension.of("provider.clusterName")
EITHER = Dimension.of("resource.kafka.id", "kafka.id")


def _inner(**overrides) -> QueryModel:
    base = dict(
        source="AwsMskBrokerSample",
        projections=(Projection("latest(provider.offlinePartitionsCount.Sum)", "offline"),),
        group_by=(CLUSTER, Dimension.of("provider.brokerId")),
        limit=UNBOUNDED,
        attributes=frozenset({"provider.clusterName", "provider.brokerId"}),
    )
    base.update(overrides)
    return QueryModel(**base)


def _outer(**overrides) -> QueryModel:
    base = dict(
        source=_inner(),
        projections=(Projection("sum(offline)", "offlinePartitions"),),
        group_by=(CLUSTER,),
        limit=100,
    )
    base.update(overrides)
    return QueryModel(**base)


# ── Rendering ────────────────────────────────────────────

def test_flat_query_renders_all_clauses():
    model = QueryModel(
        source="AwsMskTopicSample",
        projections=(Projection("average(provider.bytesInPerSec.Sum)", "bytesIn"),),
        predicates=(Predicate(CLUSTER, Operator.IN, ("a", "b")),),
        group_by=(Dimension.of("provider.topic"),),
        limit=10,
        time_window=TimeWindow.relative(30, "minutes"),
    )
    assert model.to_nrql() == (
        "SELECT average(provider.bytesInPerSec.Sum) AS 'bytesIn' FROM AwsMskTopicSample "
        "WHERE provider.clusterName IN ('a', 'b') FACET provider.topic LIMIT 10 "
        "SINCE 30 minutes ago"
    )


def test_nested_query_renders_inner_in_parentheses():
    nrql = _outer().to_nrql()
    assert nrql.startswith("SELECT sum(offline) AS 'offlinePartitions' FROM (SELECT ")
    assert "FACET provider.clusterName, provider.brokerId LIMIT MAX)" in nrql
    assert nrql.endswith("FACET provider.clusterName LIMIT 100")


def test_timeseries_suffix():
    model = QueryModel(source="Metric", projections=(Projection("count(*)"),), is_time_series=True)
    assert model.to_nrql() == "SELECT count(*) FROM Metric TIMESERIES AUTO"


def test_either_name_dimension_renders_or():
    assert EITHER.render() == "(resource.kafka.id OR kafka.id)"


def test_either_name_predicate_any_name_matches():
    p = Predicate(EITHER, Operator.IN, ("lkc-1",))
    assert p.render() == "(resource.kafka.id IN ('lkc-1') OR kafka.id IN ('lkc-1'))"


def test_either_name_negated_predicate_requires_all_names():
    p = Predicate(EITHER, Operator.NOT_IN, ("lkc-1",))
    assert p.render() == "(resource.kafka.id NOT IN ('lkc-1') AND kafka.id NOT IN ('lkc-1'))"


def test_like_wraps_wildcards_and_escapes_quotes():
    p = Predicate(Dimension.of("provider.topic"), Operator.LIKE, ("o'rders",))
    assert p.render() == "provider.topic LIKE '%o\\'rders%'"


def test_predicate_group_renders_or():
    g = PredicateGroup((
        Predicate(CLUSTER, Operator.LIKE, ("prod",)),
        Predicate(CLUSTER, Operator.LIKE, ("stage",)),
    ))
    assert g.render() == "(provider.clusterName LIKE '%prod%' OR provider.clusterName LIKE '%stage%')"


def test_subquery_predicate():
    sub = QueryModel(
        source="AwsMskClusterSample",
        projections=(Projection("uniques(provider.clusterName)"),),
        predicates=(Condition("provider.offlinePartitionsCount.Sum > 0"),),
        limit=UNBOUNDED,
    )
    sp = SubqueryPredicate(CLUSTER, sub)
    assert sp.render() == (
        "provider.clusterName IN (SELECT uniques(provider.clusterName) FROM AwsMskClusterSample "
        "WHERE (provider.offlinePartitionsCount.Sum > 0) LIMIT MAX)"
    )


def test_absolute_time_window_uses_epoch_millis():
    start = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
    end = start + datetime.timedelta(hours=1)
    window = TimeWindow.absolute(start, end)
    assert window.render() == "SINCE 1704067200000 UNTIL 1704070800000"
    assert window.is_relative is False


def test_relative_window_singular_unit():
    assert TimeWindow.relative(1, "hours").render() == "SINCE 1 hour ago"


# ── Structure ────────────────────────────────────────────

def test_depth_and_levels():
    outer = _outer()
    assert outer.depth == 2
    assert outer.is_nested
    assert outer.event == "AwsMskBrokerSample"
    levels = outer.levels()
    assert levels[0].source == "AwsMskBrokerSample"
    assert levels[-1] is outer


def test_visible_dimensions_of_outer_level():
    visible = _outer().visible_dimensions
    assert visible == {"provider.clusterName", "provider.brokerId", "offline"}


def test_with_predicates_does_not_mutate():
    model = _outer()
    extended = model.with_predicates(Condition("offlinePartitions > 0"))
    assert model.predicates == ()
    assert len(extended.predicates) == 1


# ── Canonical form ───────────────────────────────────────

def test_canonical_ignores_predicate_and_value_order():
    a = _inner().with_predicates(
        Predicate(CLUSTER, Operator.IN, ("b", "a")),
        Predicate(Dimension.of("provider.brokerId"), Operator.EQUALS, ("1",)),
    )
    b = _inner().with_predicates(
        Predicate(Dimension.of("provider.brokerId"), Operator.EQUALS, ("1",)),
        Predicate(CLUSTER, Operator.IN, ("a", "b")),
    )
    assert a.to_nrql() != b.to_nrql()
    assert a.canonical().to_nrql() == b.canonical().to_nrql()


def test_canonical_recurses_into_inner_levels():
    inner_a = _inner(predicates=(Predicate(CLUSTER, Operator.IN, ("y", "x")),))
    inner_b = _inner(predicates=(Predicate(CLUSTER, Operator.IN, ("x", "y")),))
    assert _outer(source=inner_a).canonical() == _outer(source=inner_b).canonical()


# ── Invariants ───────────────────────────────────────────

def test_equals_requires_single_value():
    with pytest.raises(InvalidQueryModel):
        Predicate(CLUSTER, Operator.EQUALS, ("a", "b"))


def test_predicate_requires_values():
    with pytest.raises(InvalidQueryModel):
        Predicate(CLUSTER, Operator.IN, ())


def test_model_requires_projection():
    with pytest.raises(InvalidQueryModel):
        QueryModel(source="Metric", projections=())


def test_limit_must_be_positive_or_unbounded():
    with pytest.raises(InvalidQueryModel):
        QueryModel(source="Metric", projections=(Projection("count(*)"),), limit=0)
    with pytest.raises(InvalidQueryModel):
        QueryModel(source="Metric", projections=(Projection("count(*)"),), limit="ALL")


def test_source_must_be_event_or_model():
    with pytest.raises(InvalidQueryModel):
        QueryModel(source=42, projections=(Projection("count(*)"),))  # type: ignore[arg-type]


def test_empty_dimension_rejected():
    with pytest.raises(InvalidQueryModel):
        Dimension.of("")
