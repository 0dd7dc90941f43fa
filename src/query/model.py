"""
QueryModel -- the immutable intermediate representation between a dashboard
selection and the executable query string.

A model is a tree: its ``source`` is either an event/table name or another
complete QueryModel (nested aggregation).  Every node is a frozen dataclass,
so templates can be shared freely; derived models are produced with
``dataclasses.replace``.

Rendering is NRQL-shaped:

    SELECT p[, p] FROM src [WHERE ...] [FACET ...] [LIMIT n|MAX]
    [SINCE ... [UNTIL ...]] [TIMESERIES AUTO]
"""
from __future__ import annotations

import datetime
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from src.core.errors import InvalidQueryModel

UNBOUNDED = "MAX"  # limit sentinel: never truncate, used for aggregation


def _quote(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


# ── Building blocks ─────────────────────────────────────

@dataclass(frozen=True)
class Dimension:
    """A grouping/filter dimension.

    More than one name means the dimension is known under several attribute
    names (schema versions); any of them may carry the value.
    """
    names: tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, "names", tuple(self.names))
        if not self.names or not all(isinstance(n, str) and n.strip() for n in self.names):
            raise InvalidQueryModel(f"Dimension needs at least one non-empty name, got {self.names!r}")

    @classmethod
    def of(cls, *names: str) -> Dimension:
        return cls(names=tuple(names))

    @property
    def primary(self) -> str:
        return self.names[0]

    @property
    def is_either_name(self) -> bool:
        return len(self.names) > 1

    @property
    def references(self) -> frozenset[str]:
        return frozenset(self.names)

    def render(self) -> str:
        if self.is_either_name:
            return "(" + " OR ".join(self.names) + ")"
        return self.primary


@dataclass(frozen=True)
class Projection:
    expression: str
    alias: str | None = None

    def __post_init__(self):
        if not self.expression or not self.expression.strip():
            raise InvalidQueryModel("Projection expression must not be empty")

    def render(self) -> str:
        if self.alias:
            return f"{self.expression} AS '{self.alias}'"
        return self.expression


class Operator(str, Enum):
    IN = "IN"
    NOT_IN = "NOT IN"
    EQUALS = "="
    LIKE = "LIKE"
    RLIKE = "RLIKE"

    @property
    def negated(self) -> bool:
        return self is Operator.NOT_IN


@dataclass(frozen=True)
class Predicate:
    """``dimension <operator> values``."""
    dimension: Dimension
    operator: Operator
    values: tuple[Any, ...]

    def __post_init__(self):
        object.__setattr__(self, "values", tuple(self.values))
        if not self.values:
            raise InvalidQueryModel(f"Predicate on '{self.dimension.primary}' has no values")
        if self.operator in (Operator.EQUALS, Operator.LIKE, Operator.RLIKE) and len(self.values) != 1:
            raise InvalidQueryModel(
                f"Operator {self.operator.value} on '{self.dimension.primary}' takes exactly one value"
            )

    @property
    def references(self) -> frozenset[str]:
        return self.dimension.references

    def _render_one(self, name: str) -> str:
        if self.operator in (Operator.IN, Operator.NOT_IN):
            vals = ", ".join(_quote(v) for v in self.values)
            return f"{name} {self.operator.value} ({vals})"
        if self.operator is Operator.LIKE:
            return f"{name} LIKE {_quote('%' + str(self.values[0]) + '%')}"
        return f"{name} {self.operator.value} {_quote(self.values[0])}"

    def render(self) -> str:
        parts = [self._render_one(n) for n in self.dimension.names]
        if len(parts) == 1:
            return parts[0]
        # A negated either-name predicate must hold for every name
        joiner = " AND " if self.operator.negated else " OR "
        return "(" + joiner.join(parts) + ")"

    def canonical(self) -> Predicate:
        return replace(self, values=tuple(sorted(self.values, key=lambda v: (type(v).__name__, str(v)))))


@dataclass(frozen=True)
class Condition:
    """A raw boolean expression over event attributes (e.g. a status rule)."""
    expression: str
    refs: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, "refs", frozenset(self.refs))
        if not self.expression or not self.expression.strip():
            raise InvalidQueryModel("Condition expression must not be empty")

    @property
    def references(self) -> frozenset[str]:
        return self.refs

    def render(self) -> str:
        return f"({self.expression})"

    def canonical(self) -> Condition:
        return self


@dataclass(frozen=True)
class PredicateGroup:
    """OR-combination of terms; the group as a whole is one AND-conjunct."""
    terms: tuple[Union[Predicate, Condition], ...]

    def __post_init__(self):
        object.__setattr__(self, "terms", tuple(self.terms))
        if not self.terms:
            raise InvalidQueryModel("PredicateGroup needs at least one term")

    @property
    def references(self) -> frozenset[str]:
        refs: frozenset[str] = frozenset()
        for t in self.terms:
            refs = refs | t.references
        return refs

    def render(self) -> str:
        if len(self.terms) == 1:
            return self.terms[0].render()
        return "(" + " OR ".join(t.render() for t in self.terms) + ")"

    def canonical(self) -> PredicateGroup:
        terms = sorted((t.canonical() for t in self.terms), key=lambda t: t.render())
        return replace(self, terms=tuple(terms))


@dataclass(frozen=True)
class SubqueryPredicate:
    """``dimension IN (SELECT uniques(dimension) FROM ... WHERE ...)``."""
    dimension: Dimension
    subquery: QueryModel
    negate: bool = False

    @property
    def references(self) -> frozenset[str]:
        return self.dimension.references

    def render(self) -> str:
        op = "NOT IN" if self.negate else "IN"
        inner = self.subquery.to_nrql()
        parts = [f"{n} {op} ({inner})" for n in self.dimension.names]
        if len(parts) == 1:
            return parts[0]
        joiner = " AND " if self.negate else " OR "
        return "(" + joiner.join(parts) + ")"

    def canonical(self) -> SubqueryPredicate:
        return replace(self, subquery=self.subquery.canonical())


Term = Union[Predicate, Condition, PredicateGroup, SubqueryPredicate]


@dataclass(frozen=True)
class TimeWindow:
    """``SINCE``/``UNTIL`` bounds: relative phrases or epoch milliseconds."""
    since: str | int
    until: str | int | None = None

    @classmethod
    def relative(cls, amount: int, unit: str) -> TimeWindow:
        if amount <= 0:
            raise InvalidQueryModel(f"Relative time window must be positive, got {amount}")
        unit = unit.lower().rstrip("s")
        plural = unit if amount == 1 else unit + "s"
        return cls(since=f"{amount} {plural} ago")

    @classmethod
    def absolute(cls, start: datetime.datetime, end: datetime.datetime) -> TimeWindow:
        if end <= start:
            raise InvalidQueryModel("Absolute time window must end after it starts")
        return cls(since=int(start.timestamp() * 1000), until=int(end.timestamp() * 1000))

    @property
    def is_relative(self) -> bool:
        return isinstance(self.since, str)

    def render(self) -> str:
        text = f"SINCE {self.since}"
        if self.until is not None:
            text += f" UNTIL {self.until}"
        return text


# ── Query model ─────────────────────────────────────────

@dataclass(frozen=True)
class QueryModel:
    source: Union[str, QueryModel]
    projections: tuple[Projection, ...]
    predicates: tuple[Term, ...] = ()
    group_by: tuple[Dimension, ...] = ()
    limit: int | str | None = None
    time_window: TimeWindow | None = None
    is_time_series: bool = False
    attributes: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, "projections", tuple(self.projections))
        object.__setattr__(self, "predicates", tuple(self.predicates))
        object.__setattr__(self, "group_by", tuple(self.group_by))
        object.__setattr__(self, "attributes", frozenset(self.attributes))

        if not self.projections:
            raise InvalidQueryModel("QueryModel needs at least one projection")
        if isinstance(self.source, str):
            if not self.source.strip():
                raise InvalidQueryModel("QueryModel source must not be empty")
        elif not isinstance(self.source, QueryModel):
            raise InvalidQueryModel(
                f"QueryModel source must be an event name or a QueryModel, got {type(self.source).__name__}"
            )
        if self.limit is not None and self.limit != UNBOUNDED:
            if not isinstance(self.limit, int) or isinstance(self.limit, bool) or self.limit <= 0:
                raise InvalidQueryModel(f"Limit must be a positive int or '{UNBOUNDED}', got {self.limit!r}")

    # ── Structure ───────────────────────────────────────

    @property
    def is_nested(self) -> bool:
        return isinstance(self.source, QueryModel)

    @property
    def depth(self) -> int:
        if isinstance(self.source, QueryModel):
            return 1 + self.source.depth
        return 1

    @property
    def event(self) -> str:
        """Event/table name at the bottom of the tree."""
        node: QueryModel = self
        while isinstance(node.source, QueryModel):
            node = node.source
        return node.source  # type: ignore[return-value]

    def levels(self) -> list[QueryModel]:
        """All levels, innermost first."""
        chain: list[QueryModel] = [self]
        while isinstance(chain[-1].source, QueryModel):
            chain.append(chain[-1].source)
        chain.reverse()
        return chain

    @property
    def visible_dimensions(self) -> frozenset[str]:
        """Names a predicate or facet at this level may reference."""
        if isinstance(self.source, QueryModel):
            inner = self.source
            names: set[str] = set()
            for dim in inner.group_by:
                names.update(dim.names)
            for proj in inner.projections:
                if proj.alias:
                    names.add(proj.alias)
            return frozenset(names)
        return self.attributes

    @property
    def output_names(self) -> list[str]:
        return [p.alias or p.expression for p in self.projections]

    # ── Derivation ──────────────────────────────────────

    def with_predicates(self, *terms: Term) -> QueryModel:
        return replace(self, predicates=self.predicates + tuple(terms))

    def canonical(self) -> QueryModel:
        """Same query with predicates and value lists in a stable order."""
        source = self.source.canonical() if isinstance(self.source, QueryModel) else self.source
        preds = sorted((p.canonical() for p in self.predicates), key=lambda p: p.render())
        return replace(self, source=source, predicates=tuple(preds))

    # ── Rendering ───────────────────────────────────────

    def to_nrql(self) -> str:
        if isinstance(self.source, QueryModel):
            source = f"({self.source.to_nrql()})"
        else:
            source = self.source

        parts = [
            "SELECT " + ", ".join(p.render() for p in self.projections),
            f"FROM {source}",
        ]
        if self.predicates:
            parts.append("WHERE " + " AND ".join(p.render() for p in self.predicates))
        if self.group_by:
            parts.append("FACET " + ", ".join(d.render() for d in self.group_by))
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        if self.time_window is not None:
            parts.append(self.time_window.render())
        if self.is_time_series:
            parts.append("TIMESERIES AUTO")
        return " ".join(parts)
