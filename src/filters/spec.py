"""
FilterSpec and Selection -- the structured representation of what a user has
selected on a dashboard.

``Selection`` is the user-level shape (what the dashboard stores and
restores); ``FilterSpec`` is one normalized filter in a closed vocabulary of
kinds and operators.
"""
from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FilterKind(str, Enum):
    PROVIDER = "provider"
    ACCOUNT = "account"
    STATUS = "status"
    CLUSTER = "cluster"
    TOPIC = "topic"
    SEARCH = "search"
    CUSTOM = "custom"


class FilterOperator(str, Enum):
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    EQUALS = "equals"
    MATCHES = "matches"


class FilterSpec(BaseModel):
    """One normalized filter."""

    model_config = ConfigDict(frozen=True)

    kind: FilterKind
    operator: FilterOperator
    values: tuple[str, ...] = Field(default=(), description="Display order preserved")
    depends_on: FilterKind | None = Field(None, description="Kind whose selection constrains this one")
    attribute: str | None = Field(None, description="Raw attribute name (custom filters only)")

    @property
    def is_empty(self) -> bool:
        return not self.values

    def signature(self) -> tuple[Any, ...]:
        """Identity ignoring value order."""
        return (self.kind.value, self.attribute, self.operator.value, frozenset(self.values))


class Selection(BaseModel):
    """Provider/account/entity/time-range selection made on a dashboard."""

    model_config = ConfigDict(populate_by_name=True)

    provider: str = Field(..., description="AWS_MSK | CONFLUENT_CLOUD")
    account_id: str = Field(..., alias="accountId", description="Host platform account id")
    clusters: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    status: str | None = Field(None, description="healthy | unhealthy")
    search: str | None = Field(None, description="Free-text entity name search")
    filters: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Extra raw filters, e.g. {'kind': 'custom', 'attribute': 'aws.region', ...}",
    )
    time_range: str | None = Field("last 30 minutes", description="e.g. 'last 6 hours'")

    def to_raw_filters(self) -> list[dict[str, Any]]:
        """Expand into raw filter selections, in application order."""
        raw: list[dict[str, Any]] = [
            {"kind": "provider", "operator": "equals", "values": [self.provider]},
            {"kind": "account", "operator": "equals", "values": [self.account_id]},
        ]
        if self.clusters:
            raw.append({"kind": "cluster", "operator": "in", "values": list(self.clusters)})
        if self.topics:
            raw.append({"kind": "topic", "operator": "in", "values": list(self.topics)})
        if self.status:
            raw.append({"kind": "status", "operator": "equals", "values": [self.status]})
        if self.search:
            raw.append({"kind": "search", "operator": "contains", "values": [self.search]})
        raw.extend(self.filters)
        return raw
