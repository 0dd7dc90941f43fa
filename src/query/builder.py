"""
Query Builder: turns a catalog template plus transformed filter predicates
into the final executable query.

Templates are shared and immutable; every build produces new model nodes.
Predicates are spliced into the innermost level that exposes the dimensions
they reference, a caller facet replaces the outermost FACET, and the time
window is applied to the outermost level only.
"""
from __future__ import annotations

import re
from dataclasses import replace
from typing import Sequence

from src.core.errors import InvalidQueryModel, UnresolvedPredicateTarget
from src.core.logging import get_logger
from src.query.model import Dimension, QueryModel, Term, TimeWindow

logger = get_logger(__name__)


# ── Time-range resolution ────────────────────────────────

_RANGE_RE = re.compile(
    r"^(?:last\s+)?(\d+)\s+(minutes?|mins?|hours?|days?|weeks?)(?:\s+ago)?$",
    re.IGNORECASE,
)

_UNIT_ALIASES = {"min": "minute", "mins": "minute"}


def parse_time_range(time_range: str | None) -> TimeWindow | None:
    """Convert a relative time range ("last 30 minutes", "6 hours") to a TimeWindow.

    Returns None when time_range is empty or unparseable.
    """
    if not time_range:
        return None

    text = time_range.strip().lower()
    if text in ("last hour", "past hour"):
        return TimeWindow.relative(1, "hour")
    if text in ("today", "last day", "past day"):
        return TimeWindow.relative(1, "day")

    m = _RANGE_RE.match(text)
    if not m:
        return None

    n = int(m.group(1))
    if n <= 0:
        return None
    unit = m.group(2).lower()
    unit = _UNIT_ALIASES.get(unit, unit).rstrip("s")
    return TimeWindow.relative(n, unit)


# ── Builder ──────────────────────────────────────────────

class _Levels:
    """Mutable working copy of a template's levels, innermost first."""

    def __init__(self, template: QueryModel, metric_id: str | None):
        self.nodes = template.levels()
        self.group_by = [list(n.group_by) for n in self.nodes]
        self.predicates: list[list[Term]] = [list(n.predicates) for n in self.nodes]
        self.metric_id = metric_id

    def visible(self, idx: int) -> frozenset[str]:
        if idx == 0:
            return self.nodes[0].attributes
        names: set[str] = set()
        for dim in self.group_by[idx - 1]:
            names.update(dim.names)
        for proj in self.nodes[idx - 1].projections:
            if proj.alias:
                names.add(proj.alias)
        return frozenset(names)

    def ensure_visible(self, dim: Dimension, idx: int) -> None:
        """Make *dim* visible at level *idx*, grouping inner levels by it if needed."""
        if dim.references <= self.visible(idx):
            return
        if idx == 0:
            raise UnresolvedPredicateTarget(dim.render(), self.metric_id)
        self.ensure_visible(dim, idx - 1)
        if dim not in self.group_by[idx - 1]:
            self.group_by[idx - 1].append(dim)

    def target_for(self, term: Term) -> int:
        refs = term.references
        for idx in range(len(self.nodes)):
            if refs <= self.visible(idx):
                return idx
        missing = sorted(refs - self.visible(0)) or sorted(refs)
        raise UnresolvedPredicateTarget(", ".join(missing), self.metric_id)

    def assemble(self) -> QueryModel:
        node: QueryModel | None = None
        for idx, level in enumerate(self.nodes):
            node = replace(
                level,
                source=node if node is not None else level.source,
                predicates=tuple(self.predicates[idx]),
                group_by=tuple(self.group_by[idx]),
            )
        if node is None:
            raise InvalidQueryModel(f"Template {self.metric_id or '-'} has no query levels")
        return node


def resolve(
    template: QueryModel,
    predicates: Sequence[Term] = (),
    facet: Sequence[Dimension] | None = None,
    time_window: TimeWindow | None = None,
    *,
    limit: int | str | None = None,
    metric_id: str | None = None,
) -> QueryModel:
    """Splice predicates, facet and time window into a copy of *template*.

    Raises
    ------
    UnresolvedPredicateTarget
        If a predicate or facet references a dimension no level exposes.
    """
    levels = _Levels(template, metric_id)
    outer = len(levels.nodes) - 1

    # Facet first: pushing a facet down widens what outer levels can see
    if facet is not None:
        levels.group_by[outer] = []
        for dim in facet:
            levels.ensure_visible(dim, outer)
            if dim not in levels.group_by[outer]:
                levels.group_by[outer].append(dim)

    for term in predicates:
        levels.predicates[levels.target_for(term)].append(term)

    model = levels.assemble()
    overrides: dict = {}
    if time_window is not None:
        overrides["time_window"] = time_window
    if limit is not None:
        overrides["limit"] = limit
    if overrides:
        model = replace(model, **overrides)
    return model


def build(
    template: QueryModel,
    predicates: Sequence[Term] = (),
    facet: Sequence[Dimension] | None = None,
    time_window: TimeWindow | None = None,
    *,
    limit: int | str | None = None,
    metric_id: str | None = None,
) -> str:
    """Build the executable query string for *template*."""
    model = resolve(
        template, predicates, facet, time_window, limit=limit, metric_id=metric_id,
    )
    query = model.to_nrql()
    logger.info("Built query [%s] depth=%d: %s", metric_id or "-", model.depth, query)
    return query
