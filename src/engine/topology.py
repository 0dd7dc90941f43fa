"""
Topology lookup -- resolves cluster / broker / topic relationships through the
host platform's entity search, a second query surface with the same
``execute`` contract as metric queries but an entity-search vocabulary:

    domain = 'INFRA' AND type = 'AWSMSKTOPIC' AND tags.accountId = '123'
      AND tags.`aws.clusterName` IN ('a', 'b')

Results are cached with the (long) entity TTL.  Option lists for dependent
filters collapse to empty when the prerequisite selection is empty.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from src.core.errors import TemplateNotFound, UnresolvedPredicateTarget
from src.core.logging import get_logger
from src.core.utils import unique
from src.engine.cache import QueryCache, text_key
from src.engine.executor import QueryExecutor, ResultShape
from src.filters.normalizer import NormalizedFilters
from src.filters.registry import FilterRegistry, default_registry
from src.filters.spec import FilterKind
from src.query.catalog import QueryCatalog, load_default_catalog

logger = get_logger(__name__)

# Filter kinds whose options are entity names of this type
_OPTION_ENTITY = {
    FilterKind.CLUSTER: "cluster",
    FilterKind.TOPIC: "topic",
}


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "\\'") + "'"


@dataclass(frozen=True)
class EntityRecord:
    guid: str
    name: str
    entity_type: str
    alert_severity: str | None = None
    parent: str | None = None


class TopologyClient:
    def __init__(
        self,
        executor: QueryExecutor,
        cache: QueryCache,
        catalog: QueryCatalog | None = None,
        registry: FilterRegistry | None = None,
    ):
        self._executor = executor
        self._cache = cache
        self._catalog = catalog or load_default_catalog()
        self._registry = registry or default_registry()

    def search_query(
        self,
        provider: str,
        entity_type: str,
        account_id: str,
        parents: Sequence[str] = (),
    ) -> str:
        provider_def = self._catalog.provider(provider)
        entity = provider_def.entity(entity_type) if provider_def else None
        if entity is None or not entity.search_type:
            raise TemplateNotFound(provider, f"entities:{entity_type}")

        clauses = [
            "domain = 'INFRA'",
            f"type = {_quote(entity.search_type)}",
            f"tags.accountId = {_quote(account_id)}",
        ]
        if parents:
            if not entity.parent_tag:
                raise UnresolvedPredicateTarget(f"parent of {entity_type}")
            values = ", ".join(_quote(p) for p in sorted(set(parents)))
            clauses.append(f"tags.`{entity.parent_tag}` IN ({values})")
        return " AND ".join(clauses)

    async def entities(
        self,
        provider: str,
        entity_type: str,
        account_id: str,
        parents: Sequence[str] = (),
    ) -> list[EntityRecord]:
        """Entities of *entity_type*, optionally limited to the given parent clusters."""
        query = self.search_query(provider, entity_type, account_id, parents)
        key = text_key(query, account_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        rows = await self._executor.execute(query, account_id, ResultShape.ENTITIES)
        parent_tag = self._catalog.provider(provider).entity(entity_type).parent_tag  # type: ignore[union-attr]
        records = [r for r in (self._parse(row, entity_type, parent_tag) for row in rows) if r]
        if len(records) < len(rows):
            logger.warning("Entity search returned %d unusable rows", len(rows) - len(records))

        records.sort(key=lambda r: (r.name, r.guid))
        self._cache.set(key, records, data_class="entity")
        return records

    async def severities(self, provider: str, entity_type: str, account_id: str) -> dict[str, str]:
        """Entity name -> alert severity, for entities that report one."""
        return {
            r.name: r.alert_severity
            for r in await self.entities(provider, entity_type, account_id)
            if r.alert_severity
        }

    async def options_for(
        self,
        kind: FilterKind,
        filters: NormalizedFilters,
        provider: str,
        account_id: str,
    ) -> list[str]:
        """Selectable values for a filter kind given the current selection.

        A kind that depends on another kind gets no options at all while the
        prerequisite has no selected value.
        """
        entity_type = _OPTION_ENTITY.get(kind)
        if entity_type is None:
            return []

        parents: tuple[str, ...] = ()
        definition = self._registry.get(kind)
        if definition is not None and definition.depends_on is not None:
            parents = filters.values_for(definition.depends_on)
            if not parents:
                return []

        records = await self.entities(provider, entity_type, account_id, parents)
        return unique(r.name for r in records)

    @staticmethod
    def _parse(row: Any, entity_type: str, parent_tag: str | None) -> EntityRecord | None:
        if not isinstance(row, dict) or not row.get("name"):
            return None
        tags = row.get("tags") or {}
        parent = tags.get(parent_tag) if parent_tag and isinstance(tags, dict) else None
        if isinstance(parent, list):
            parent = parent[0] if parent else None
        severity = row.get("alertSeverity")
        return EntityRecord(
            guid=str(row.get("guid") or row["name"]),
            name=str(row["name"]),
            entity_type=entity_type,
            alert_severity=str(severity).lower().replace("_", "-") if severity else None,
            parent=str(parent) if parent is not None else None,
        )
