"""
Filter Normalizer -- turns raw dashboard selections into a canonical list of
FilterSpecs.

Rules, applied in order:
  1. Unknown kinds, operators invalid for the kind, and values outside the
     kind's choices are dropped and recorded as warnings; the rest of the
     filter set still applies.
  2. Duplicate (kind, operator, value) triples collapse to one.
  3. For exclusive kinds the last applied value wins.
  4. A filter whose prerequisite (``depends_on``) has no selected value
     collapses to an empty value set -- never to "all".
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from src.core.errors import (
    EngineError,
    InvalidFilterKind,
    InvalidFilterOperator,
    InvalidFilterValue,
)
from src.core.logging import get_logger
from src.filters.registry import FilterRegistry, default_registry
from src.filters.spec import FilterKind, FilterOperator, FilterSpec

logger = get_logger(__name__)


@dataclass
class NormalizedFilters:
    specs: list[FilterSpec] = field(default_factory=list)
    warnings: list[EngineError] = field(default_factory=list)

    def of_kind(self, kind: FilterKind) -> list[FilterSpec]:
        return [s for s in self.specs if s.kind == kind]

    def values_for(self, kind: FilterKind) -> tuple[str, ...]:
        """All selected values for *kind*, in display order."""
        out: list[str] = []
        for spec in self.of_kind(kind):
            for v in spec.values:
                if v not in out:
                    out.append(v)
        return tuple(out)

    def first_value(self, kind: FilterKind) -> str | None:
        values = self.values_for(kind)
        return values[0] if values else None


def _as_values(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (str, int, float)):
        raw = [raw]
    values: list[str] = []
    for v in raw:
        if v is None:
            continue
        text = str(v).strip()
        if text:
            values.append(text)
    return values


def _triples(
    raw_selections: Iterable[Mapping[str, Any] | FilterSpec],
    registry: FilterRegistry,
    warnings: list[EngineError],
) -> list[tuple[FilterKind, str | None, FilterOperator, str]]:
    """Validate raw selections and flatten them into (kind, attribute, operator, value)."""
    triples: list[tuple[FilterKind, str | None, FilterOperator, str]] = []

    for raw in raw_selections:
        if isinstance(raw, FilterSpec):
            raw = raw.model_dump(mode="json")
        kind_name = str(raw.get("kind", ""))
        op_name = str(raw.get("operator", "equals"))

        try:
            kind = FilterKind(kind_name)
        except ValueError:
            warnings.append(InvalidFilterKind(kind_name))
            continue

        definition = registry.get(kind)
        if definition is None:
            warnings.append(InvalidFilterKind(kind_name))
            continue

        allowed = sorted(o.value for o in definition.operators)
        try:
            operator = FilterOperator(op_name)
        except ValueError:
            warnings.append(InvalidFilterOperator(kind_name, op_name, allowed))
            continue
        if operator not in definition.operators:
            warnings.append(InvalidFilterOperator(kind_name, op_name, allowed))
            continue

        attribute = raw.get("attribute")
        if definition.requires_attribute and not attribute:
            warnings.append(InvalidFilterOperator(kind_name, op_name, ["<attribute required>"]))
            continue

        for value in _as_values(raw.get("values")):
            if definition.choices is not None and value not in definition.choices:
                warnings.append(InvalidFilterValue(kind_name, value, list(definition.choices)))
                continue
            triples.append((kind, attribute if definition.requires_attribute else None, operator, value))

    return triples


def cascade(specs: list[FilterSpec], registry: FilterRegistry) -> list[FilterSpec]:
    """Collapse filters whose prerequisite kind has no selected value.

    Collapsing is transitive: a filter depending on a collapsed filter
    collapses too.
    """
    out = list(specs)
    changed = True
    while changed:
        changed = False
        selected = {s.kind for s in out if not s.is_empty}
        for idx, spec in enumerate(out):
            definition = registry.get(spec.kind)
            dep = definition.depends_on if definition else None
            if dep is not None and dep not in selected and not spec.is_empty:
                logger.info("Filter '%s' cleared: prerequisite '%s' has no selection",
                            spec.kind.value, dep.value)
                out[idx] = spec.model_copy(update={"values": ()})
                changed = True
    return out


def normalize(
    raw_selections: Iterable[Mapping[str, Any] | FilterSpec],
    registry: FilterRegistry | None = None,
) -> NormalizedFilters:
    """Return canonical FilterSpecs plus the warnings for anything dropped."""
    if registry is None:
        registry = default_registry()

    warnings: list[EngineError] = []
    triples = _triples(raw_selections, registry, warnings)

    # Exclusive kinds: the last applied value wins
    exclusive_last: dict[FilterKind, tuple] = {}
    for t in triples:
        definition = registry.get(t[0])
        if definition is not None and definition.exclusive:
            exclusive_last[t[0]] = t

    kept: list[tuple[FilterKind, str | None, FilterOperator, str]] = []
    for t in triples:
        if t[0] in exclusive_last and exclusive_last[t[0]] != t:
            continue
        if t not in kept:
            kept.append(t)

    # Regroup by (kind, attribute, operator), first-seen order
    grouped: dict[tuple[FilterKind, str | None, FilterOperator], list[str]] = {}
    for kind, attribute, operator, value in kept:
        grouped.setdefault((kind, attribute, operator), []).append(value)

    specs: list[FilterSpec] = []
    for (kind, attribute, operator), values in grouped.items():
        definition = registry.get(kind)
        specs.append(FilterSpec(
            kind=kind,
            operator=operator,
            values=tuple(values),
            depends_on=definition.depends_on if definition else None,
            attribute=attribute,
        ))

    specs = cascade(specs, registry)

    for w in warnings:
        logger.warning("Filter dropped: %s", w)

    return NormalizedFilters(specs=specs, warnings=warnings)
