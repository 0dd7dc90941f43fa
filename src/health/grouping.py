"""
Aggregation/grouping transform -- reshapes derived entity metrics into
grouped collections for any renderer.

Everything here is pure and deterministic: groups and their members are
ordered by a fixed severity ranking and then entity id, so identical input
always yields identical output.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Union

from src.health.derivation import AlertSeverity, DerivedEntityMetric, HealthStatus

SEVERITY_ORDER: tuple[str, ...] = tuple(s.value for s in AlertSeverity)

# Health statuses ranked on the same scale as alert severities
_STATUS_RANK = {
    HealthStatus.CRITICAL.value: SEVERITY_ORDER.index("critical"),
    HealthStatus.WARNING.value: SEVERITY_ORDER.index("warning"),
    HealthStatus.UNKNOWN.value: SEVERITY_ORDER.index("not-configured"),
    HealthStatus.HEALTHY.value: SEVERITY_ORDER.index("not-alerting"),
}

GroupKey = Union[str, Callable[[DerivedEntityMetric], str]]

_KEY_FUNCS: dict[str, Callable[[DerivedEntityMetric], str]] = {
    "health_status": lambda m: m.health_status.value,
    "alert_severity": lambda m: m.alert_severity.value,
    "entity_type": lambda m: m.entity_type,
    "provider": lambda m: m.provider,
}


def severity_rank(value: str) -> int:
    """Position on the severity scale; unranked values sort last."""
    if value in SEVERITY_ORDER:
        return SEVERITY_ORDER.index(value)
    if value in _STATUS_RANK:
        return _STATUS_RANK[value]
    return len(SEVERITY_ORDER)


def _member_sort_key(m: DerivedEntityMetric) -> tuple[int, int, str]:
    return (severity_rank(m.alert_severity.value), severity_rank(m.health_status.value), m.entity_id)


@dataclass(frozen=True)
class Group:
    key: str
    items: tuple[DerivedEntityMetric, ...]

    @property
    def count(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class GroupedCollection:
    group_by: str
    groups: tuple[Group, ...] = ()

    @property
    def counts(self) -> dict[str, int]:
        return {g.key: g.count for g in self.groups}

    @property
    def total(self) -> int:
        return sum(g.count for g in self.groups)

    def get(self, key: str) -> Group | None:
        for g in self.groups:
            if g.key == key:
                return g
        return None


@dataclass(frozen=True)
class HealthSummary:
    healthy: int = 0
    unhealthy: int = 0
    unknown: int = 0
    by_status: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.healthy + self.unhealthy + self.unknown


def group(metrics: Iterable[DerivedEntityMetric], group_by: GroupKey = "health_status") -> GroupedCollection:
    """Group *metrics* by a named key or a key function."""
    if callable(group_by):
        key_fn = group_by
        label = getattr(group_by, "__name__", "custom")
    else:
        if group_by not in _KEY_FUNCS:
            raise ValueError(
                f"Unknown group key '{group_by}'. Allowed: {', '.join(_KEY_FUNCS)}"
            )
        key_fn = _KEY_FUNCS[group_by]
        label = group_by

    buckets: dict[str, list[DerivedEntityMetric]] = {}
    for m in metrics:
        buckets.setdefault(str(key_fn(m)), []).append(m)

    ordered_keys = sorted(buckets, key=lambda k: (severity_rank(k), k))
    groups = tuple(
        Group(key=k, items=tuple(sorted(buckets[k], key=_member_sort_key)))
        for k in ordered_keys
    )
    return GroupedCollection(group_by=label, groups=groups)


def summarize_health(metrics: Iterable[DerivedEntityMetric]) -> HealthSummary:
    """Count entities by health; warning and critical both count as unhealthy."""
    by_status = {s.value: 0 for s in HealthStatus}
    for m in metrics:
        by_status[m.health_status.value] += 1
    return HealthSummary(
        healthy=by_status[HealthStatus.HEALTHY.value],
        unhealthy=by_status[HealthStatus.WARNING.value] + by_status[HealthStatus.CRITICAL.value],
        unknown=by_status[HealthStatus.UNKNOWN.value],
        by_status=by_status,
    )


def status_members(metrics: Iterable[DerivedEntityMetric], values: Iterable[str]) -> tuple[str, ...]:
    """Sorted ids of the entities selected by any of the status filter *values*."""
    values = tuple(values)
    return tuple(sorted({m.entity_id for m in metrics if any(m.matches_status(v) for v in values)}))


def rank_by_figure(
    metrics: Iterable[DerivedEntityMetric],
    figure: str,
    top: int | None = None,
) -> list[DerivedEntityMetric]:
    """Entities ordered by a derived figure, highest first; ties by entity id.

    Entities without the figure are left out.
    """
    with_figure = [m for m in metrics if figure in m.figures]
    ranked = sorted(with_figure, key=lambda m: (-m.figures[figure], m.entity_id))
    return ranked[:top] if top is not None else ranked
