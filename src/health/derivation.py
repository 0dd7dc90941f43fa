"""
Metric Derivation Engine -- converts raw per-entity result rows into health
scores, statuses and derived throughput figures.

Health is decided by a priority-ordered rule table per (provider, entity
type); the first rule that matches wins.  The same table serves entity lists
and summary counts, so a count of unhealthy entities always equals the
number a user finds in the list.

``derive_health`` is total: missing, null or non-numeric values are treated
as absent and fall back to the documented defaults below; it never raises.

AWS_MSK (dimensional samples), clusters:
  1. active controllers != 1          -> 0,   critical
  2. offline partitions > 0           -> 25,  critical
  3. under-replicated partitions > 0  -> max(0, 100 - 10 x count), warning
  4. otherwise                        -> 100, healthy
  Brokers skip rule 1.  Topics: active -> 100 healthy, idle -> 50 unknown.
  Every health field absent -> 50 unknown; otherwise absent fields default
  to their no-issue values (controllers 1, partitions 0).

CONFLUENT_CLOUD (counter stream):
  no activity (bytes in and out both zero, or nothing reported) -> 50, unknown
  load > 90                     -> critical
  load > 70 or hot partitions   -> warning
  otherwise                     -> healthy
  score = clamp(round(100 - load) - 10 x hot partitions, 0, 100)
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from src.core.errors import MalformedRow
from src.core.logging import get_logger

logger = get_logger(__name__)

AWS_MSK = "AWS_MSK"
CONFLUENT_CLOUD = "CONFLUENT_CLOUD"

NEUTRAL_SCORE = 50

# Canonical row field names (query aliases)
ACTIVE_CONTROLLERS = "activeControllers"
OFFLINE_PARTITIONS = "offlinePartitions"
UNDER_REPLICATED = "underReplicatedPartitions"
CLUSTER_LOAD = "clusterLoadPercent"
HOT_PARTITIONS = "hotPartitionCount"
BYTES_IN = "bytesInPerSec"
BYTES_OUT = "bytesOutPerSec"
MESSAGES_IN = "messagesInPerSec"
PARTITION_COUNT = "partitionCount"
BROKER_COUNT = "brokerCount"

_ID_KEYS = ("facet", "entityName", "name", "entityId")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    WARNING = "warning"
    LOW = "low"
    NOT_CONFIGURED = "not-configured"
    NOT_ALERTING = "not-alerting"


_STATUS_SEVERITY = {
    HealthStatus.CRITICAL: AlertSeverity.CRITICAL,
    HealthStatus.WARNING: AlertSeverity.WARNING,
    HealthStatus.UNKNOWN: AlertSeverity.NOT_CONFIGURED,
    HealthStatus.HEALTHY: AlertSeverity.NOT_ALERTING,
}

# Status filter value -> derived statuses it selects; unknown matches neither
STATUS_FILTERS: Mapping[str, frozenset[HealthStatus]] = MappingProxyType({
    "healthy": frozenset({HealthStatus.HEALTHY}),
    "unhealthy": frozenset({HealthStatus.WARNING, HealthStatus.CRITICAL}),
})


# ── Rows ────────────────────────────────────────────────


def to_number(value: Any) -> float | None:
    """Coerce a raw result value to float; anything unusable is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _entity_id(row: Mapping[str, Any]) -> str | None:
    for key in _ID_KEYS:
        raw = row.get(key)
        if raw is None:
            continue
        if isinstance(raw, (list, tuple)):
            parts = [str(p) for p in raw if p is not None and str(p) != ""]
            if parts:
                return "/".join(parts)
            continue
        text = str(raw).strip()
        if text:
            return text
    return None


@dataclass(frozen=True)
class RawEntityRow:
    """Provider-tagged metric values for one entity; read-only."""
    provider: str
    entity_id: str
    values: Mapping[str, float | None] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    @classmethod
    def from_result(cls, row: Any, provider: str) -> RawEntityRow:
        """Build from an execution result row.

        Raises
        ------
        MalformedRow
            If the row is not a mapping or carries no entity identifier.
        """
        if not isinstance(row, Mapping):
            raise MalformedRow(f"Expected a mapping row, got {type(row).__name__}")
        entity_id = _entity_id(row)
        if entity_id is None:
            raise MalformedRow(f"Row has no entity identifier: keys={sorted(map(str, row))}")
        values = {str(k): to_number(v) for k, v in row.items() if k not in _ID_KEYS}
        return cls(provider=provider, entity_id=entity_id, values=values)

    def number(self, name: str) -> float | None:
        return self.values.get(name)


@dataclass(frozen=True)
class DerivedEntityMetric:
    entity_id: str
    entity_type: str
    provider: str
    health_score: int
    health_status: HealthStatus
    alert_severity: AlertSeverity
    figures: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "figures", MappingProxyType(dict(self.figures)))

    @property
    def is_unhealthy(self) -> bool:
        return self.matches_status("unhealthy")

    def matches_status(self, value: str) -> bool:
        """Whether this entity is selected by status filter *value*."""
        return self.health_status in STATUS_FILTERS.get(value, frozenset())


# ── Rule tables ─────────────────────────────────────────


def _clamp(score: float) -> int:
    return int(max(0, min(100, round(score))))


def _n(row: RawEntityRow, name: str, default: float = 0.0) -> float:
    value = row.number(name)
    return default if value is None else value


@dataclass(frozen=True)
class HealthRule:
    name: str
    matches: Callable[[RawEntityRow], bool]
    score: Callable[[RawEntityRow], int]
    status: HealthStatus


@dataclass(frozen=True)
class RuleTable:
    rules: tuple[HealthRule, ...]
    neutral_when: Callable[[RawEntityRow], bool]
    healthy_score: Callable[[RawEntityRow], int] = lambda row: 100


def _all_absent(*names: str) -> Callable[[RawEntityRow], bool]:
    return lambda row: all(row.number(n) is None for n in names)


def _idle(row: RawEntityRow) -> bool:
    """No traffic: in/out both explicitly zero, or no traffic or load data at all."""
    b_in, b_out = row.number(BYTES_IN), row.number(BYTES_OUT)
    if b_in == 0 and b_out == 0:
        return True
    return all(row.number(n) is None for n in (BYTES_IN, BYTES_OUT, MESSAGES_IN, CLUSTER_LOAD, HOT_PARTITIONS))


def _inactive(row: RawEntityRow) -> bool:
    return _n(row, BYTES_IN) <= 0 and _n(row, BYTES_OUT) <= 0 and _n(row, MESSAGES_IN) <= 0


def _confluent_score(row: RawEntityRow) -> int:
    return _clamp(100 - _n(row, CLUSTER_LOAD) - 10 * _n(row, HOT_PARTITIONS))


_MSK_OFFLINE = HealthRule(
    "offline_partitions",
    lambda r: _n(r, OFFLINE_PARTITIONS) > 0,
    lambda r: 25,
    HealthStatus.CRITICAL,
)
_MSK_UNDER_REPLICATED = HealthRule(
    "under_replicated_partitions",
    lambda r: _n(r, UNDER_REPLICATED) > 0,
    lambda r: _clamp(100 - 10 * _n(r, UNDER_REPLICATED)),
    HealthStatus.WARNING,
)

RULE_TABLES: dict[tuple[str, str], RuleTable] = {
    (AWS_MSK, "cluster"): RuleTable(
        rules=(
            HealthRule(
                "active_controllers",
                lambda r: _n(r, ACTIVE_CONTROLLERS, 1.0) != 1,
                lambda r: 0,
                HealthStatus.CRITICAL,
            ),
            _MSK_OFFLINE,
            _MSK_UNDER_REPLICATED,
        ),
        neutral_when=_all_absent(ACTIVE_CONTROLLERS, OFFLINE_PARTITIONS, UNDER_REPLICATED),
    ),
    (AWS_MSK, "broker"): RuleTable(
        rules=(_MSK_OFFLINE, _MSK_UNDER_REPLICATED),
        neutral_when=_all_absent(OFFLINE_PARTITIONS, UNDER_REPLICATED),
    ),
    (AWS_MSK, "topic"): RuleTable(rules=(), neutral_when=_inactive),
    (CONFLUENT_CLOUD, "cluster"): RuleTable(
        rules=(
            HealthRule("cluster_load_critical", lambda r: _n(r, CLUSTER_LOAD) > 90,
                       _confluent_score, HealthStatus.CRITICAL),
            HealthRule("cluster_load_high", lambda r: _n(r, CLUSTER_LOAD) > 70,
                       _confluent_score, HealthStatus.WARNING),
            HealthRule("hot_partitions", lambda r: _n(r, HOT_PARTITIONS) > 0,
                       _confluent_score, HealthStatus.WARNING),
        ),
        neutral_when=_idle,
        healthy_score=_confluent_score,
    ),
    (CONFLUENT_CLOUD, "topic"): RuleTable(rules=(), neutral_when=_idle),
}


# ── Derivation ──────────────────────────────────────────

_FIGURES = (
    ("bytes_in_per_sec", BYTES_IN),
    ("bytes_out_per_sec", BYTES_OUT),
    ("messages_in_per_sec", MESSAGES_IN),
    ("utilization_percent", CLUSTER_LOAD),
    ("partition_count", PARTITION_COUNT),
    ("broker_count", BROKER_COUNT),
    ("active_controllers", ACTIVE_CONTROLLERS),
    ("offline_partitions", OFFLINE_PARTITIONS),
    ("under_replicated_partitions", UNDER_REPLICATED),
    ("hot_partition_count", HOT_PARTITIONS),
)


def derive_figures(row: RawEntityRow) -> dict[str, float]:
    figures = {name: row.number(src) for name, src in _FIGURES}
    out = {k: v for k, v in figures.items() if v is not None}
    if row.number(BYTES_IN) is not None or row.number(BYTES_OUT) is not None:
        out["throughput_bytes_per_sec"] = _n(row, BYTES_IN) + _n(row, BYTES_OUT)
    return out


def _lenient_row(row: Any, provider: str) -> RawEntityRow:
    if isinstance(row, RawEntityRow):
        return row
    if isinstance(row, Mapping):
        try:
            return RawEntityRow.from_result(row, provider)
        except MalformedRow:
            values = {str(k): to_number(v) for k, v in row.items() if k not in _ID_KEYS}
            return RawEntityRow(provider=provider, entity_id="unknown", values=values)
    return RawEntityRow(provider=provider, entity_id="unknown")


def derive_health(
    row: RawEntityRow | Mapping[str, Any],
    provider: str,
    entity_type: str,
    alert_severity: AlertSeverity | str | None = None,
) -> DerivedEntityMetric:
    """Classify one entity. Never raises."""
    raw = _lenient_row(row, provider)
    table = RULE_TABLES.get((provider, entity_type))

    if table is None or table.neutral_when(raw):
        score, status = NEUTRAL_SCORE, HealthStatus.UNKNOWN
    else:
        score, status = table.healthy_score(raw), HealthStatus.HEALTHY
        for rule in table.rules:
            if rule.matches(raw):
                score, status = rule.score(raw), rule.status
                break

    severity = _STATUS_SEVERITY[status]
    if alert_severity is not None:
        try:
            severity = AlertSeverity(str(alert_severity).lower().replace("_", "-"))
        except ValueError:
            logger.debug("Unrecognised alert severity %r for %s", alert_severity, raw.entity_id)

    return DerivedEntityMetric(
        entity_id=raw.entity_id,
        entity_type=entity_type,
        provider=provider,
        health_score=_clamp(score),
        health_status=status,
        alert_severity=severity,
        figures=derive_figures(raw),
    )


@dataclass
class DerivationBatch:
    metrics: list[DerivedEntityMetric] = field(default_factory=list)
    skipped: int = 0
    errors: list[MalformedRow] = field(default_factory=list)


def derive_batch(
    rows: Iterable[Any],
    provider: str,
    entity_type: str,
    severities: Mapping[str, str] | None = None,
) -> DerivationBatch:
    """Derive every row; malformed rows are skipped and counted."""
    batch = DerivationBatch()
    severities = severities or {}
    for row in rows:
        try:
            raw = RawEntityRow.from_result(row, provider)
        except MalformedRow as exc:
            batch.skipped += 1
            batch.errors.append(exc)
            logger.warning("Skipping malformed %s row: %s", provider, exc)
            continue
        batch.metrics.append(
            derive_health(raw, provider, entity_type, severities.get(raw.entity_id))
        )
    return batch
