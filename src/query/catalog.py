"""
Loads, parses, and caches the provider query catalog YAML into typed objects.

The catalog is the single source of truth for:
  - providers and the entity types each one reports (event, attributes)
  - how UI filter kinds map onto each provider's attribute vocabulary
  - per-(provider, metric) query templates, expressed as QueryModels
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from functools import lru_cache
from typing import Any

import yaml

from src.core.config import get_settings
from src.core.errors import TemplateNotFound, InvalidQueryModel
from src.core.logging import get_logger
from src.query.model import (
    Condition,
    Dimension,
    Projection,
    QueryModel,
)
from src.query.validator import validate_template

logger = get_logger(__name__)

DATA_CLASSES = ("entity", "metric")
RESULT_SHAPES = ("single", "faceted", "timeseries")
PURPOSES = ("aggregation", "display")


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class EntityDef:
    name: str                    # cluster | broker | topic
    event: str
    name_dimension: Dimension
    attributes: frozenset[str]
    search_type: str
    parent_tag: str | None = None


@dataclass(frozen=True)
class FilterVocab:
    """How one UI filter kind is expressed in a provider's schema."""
    kind: str
    home: str                                  # entity whose event carries the attribute
    local_to: frozenset[str]                   # entity types that can filter on it directly
    attribute: Dimension | None = None
    join: Dimension | None = None              # dimension shared with other entities
    health: str | None = None                  # template whose derived health selects members


@dataclass(frozen=True)
class MetricTemplate:
    metric_id: str
    provider: str
    description: str
    entity_type: str
    scope: str                   # entity whose event the innermost level reads
    data_class: str              # entity | metric
    result_shape: str            # single | faceted | timeseries
    purpose: str                 # aggregation | display
    model: QueryModel
    summary: str | None = None   # "health" -> rows are counted by health status

    @property
    def for_aggregation(self) -> bool:
        return self.purpose == "aggregation"


@dataclass
class ProviderDef:
    name: str
    kind: str
    entities: dict[str, EntityDef]
    filters: dict[str, FilterVocab]
    metrics: dict[str, MetricTemplate]

    def entity(self, name: str) -> EntityDef | None:
        return self.entities.get(name)


@dataclass
class QueryCatalog:
    """Fully parsed provider catalog."""

    version: int
    providers: dict[str, ProviderDef]

    # ── Convenience look-ups ─────────────────────────

    def provider(self, name: str) -> ProviderDef | None:
        return self.providers.get(name)

    def get_provider_names(self) -> list[str]:
        return list(self.providers.keys())

    def get_metric_ids(self, provider: str) -> list[str]:
        p = self.providers.get(provider)
        return list(p.metrics.keys()) if p else []

    def pairs(self) -> list[tuple[str, str]]:
        """All registered (provider, metric_id) pairs."""
        return [(p.name, m) for p in self.providers.values() for m in p.metrics]

    def template(self, provider: str, metric_id: str) -> MetricTemplate:
        p = self.providers.get(provider)
        if p is None or metric_id not in p.metrics:
            raise TemplateNotFound(provider, metric_id)
        return p.metrics[metric_id]

    def build_template(self, provider: str, metric_id: str) -> QueryModel:
        """Return the (shared, immutable) QueryModel for a pair.

        Raises TemplateNotFound instead of falling back to an empty query.
        """
        return self.template(provider, metric_id).model


# ── Parsing ──────────────────────────────────────────────

def _dimension(raw: str | list[str]) -> Dimension:
    if isinstance(raw, str):
        return Dimension.of(raw)
    return Dimension(names=tuple(raw))


def _parse_entity(name: str, raw: dict[str, Any]) -> EntityDef:
    return EntityDef(
        name=name,
        event=raw["event"],
        name_dimension=_dimension(raw["name"]),
        attributes=frozenset(raw.get("attributes") or []),
        search_type=raw.get("search_type", ""),
        parent_tag=raw.get("parent_tag"),
    )


def _parse_filter(kind: str, raw: dict[str, Any]) -> FilterVocab:
    return FilterVocab(
        kind=kind,
        home=raw["home"],
        local_to=frozenset(raw.get("local_to") or []),
        attribute=_dimension(raw["attribute"]) if raw.get("attribute") else None,
        join=_dimension(raw["join"]) if raw.get("join") else None,
        health=raw.get("health"),
    )


def _parse_query(raw: dict[str, Any], entities: dict[str, EntityDef]) -> tuple[QueryModel, str]:
    """Parse a (possibly nested) query block. Returns (model, scope entity)."""
    src = raw["from"]
    if "query" in src:
        source, scope = _parse_query(src["query"], entities)
        attributes: frozenset[str] = frozenset()
    else:
        scope = src["entity"]
        entity = entities.get(scope)
        if entity is None:
            raise InvalidQueryModel(f"Query reads unknown entity '{scope}'")
        source = entity.event
        attributes = entity.attributes

    model = QueryModel(
        source=source,
        projections=tuple(Projection(p["expr"], p.get("as")) for p in raw["select"]),
        predicates=tuple(
            Condition(w["expr"], frozenset(w.get("refs") or [])) for w in raw.get("where") or []
        ),
        group_by=tuple(_dimension(f) for f in raw.get("facet") or []),
        limit=raw.get("limit"),
        is_time_series=bool(raw.get("timeseries", False)),
        attributes=attributes,
    )
    return model, scope


def _parse_metric(provider: str, raw: dict[str, Any], entities: dict[str, EntityDef]) -> MetricTemplate:
    metric_id = raw["id"]
    model, scope = _parse_query(raw["query"], entities)

    errors = validate_template(model, name=f"{provider}/{metric_id}")
    data_class = raw.get("data_class", "metric")
    result_shape = raw.get("result_shape", "faceted")
    purpose = raw.get("purpose", "display")
    if data_class not in DATA_CLASSES:
        errors.append(f"{provider}/{metric_id}: unknown data_class '{data_class}'")
    if result_shape not in RESULT_SHAPES:
        errors.append(f"{provider}/{metric_id}: unknown result_shape '{result_shape}'")
    if purpose not in PURPOSES:
        errors.append(f"{provider}/{metric_id}: unknown purpose '{purpose}'")
    if errors:
        raise InvalidQueryModel("; ".join(errors))

    return MetricTemplate(
        metric_id=metric_id,
        provider=provider,
        description=raw.get("description", ""),
        entity_type=raw.get("entity_type", scope),
        scope=scope,
        data_class=data_class,
        result_shape=result_shape,
        purpose=purpose,
        model=model,
        summary=raw.get("summary"),
    )


def _parse_provider(name: str, raw: dict[str, Any]) -> ProviderDef:
    entities = {k: _parse_entity(k, v) for k, v in (raw.get("entities") or {}).items()}
    filters = {k: _parse_filter(k, v) for k, v in (raw.get("filters") or {}).items()}
    metrics = {m["id"]: _parse_metric(name, m, entities) for m in raw.get("metrics") or []}

    for vocab in filters.values():
        if vocab.health is None:
            continue
        template = metrics.get(vocab.health)
        if template is None:
            raise InvalidQueryModel(f"{name}: filter '{vocab.kind}' names unknown health template '{vocab.health}'")
        if template.entity_type != vocab.home or template.result_shape != "faceted":
            raise InvalidQueryModel(
                f"{name}: health template '{vocab.health}' must list '{vocab.home}' entities"
            )
        if vocab.attribute is None:
            raise InvalidQueryModel(f"{name}: filter '{vocab.kind}' has no membership attribute")

    return ProviderDef(
        name=name,
        kind=raw.get("kind", "dimensional"),
        entities=entities,
        filters=filters,
        metrics=metrics,
    )


def parse_catalog(raw_yaml: dict[str, Any]) -> QueryCatalog:
    providers = {k: _parse_provider(k, v) for k, v in (raw_yaml.get("providers") or {}).items()}
    return QueryCatalog(version=raw_yaml.get("version", 1), providers=providers)


# ── Public API ───────────────────────────────────────────

def load_catalog(path: str | Path) -> QueryCatalog:
    """Load a catalog from an explicit YAML file."""
    with open(path) as f:
        raw = yaml.safe_load(f)
    catalog = parse_catalog(raw)
    logger.info("Loaded query catalog %s: %d templates", path, len(catalog.pairs()))
    return catalog


@lru_cache
def load_default_catalog() -> QueryCatalog:
    """Load and cache the catalog configured in settings."""
    return load_catalog(get_settings().catalog_path)


def build_template(provider: str, metric_id: str) -> QueryModel:
    return load_default_catalog().build_template(provider, metric_id)
