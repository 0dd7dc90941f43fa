"""
Filter registry -- which operators each filter kind accepts, which kinds are
exclusive, and which kinds depend on another kind's selection.

The ``depends_on`` graph is checked when a definition is registered, so a
cyclic dependency never reaches evaluation.
"""
from __future__ import annotations

from dataclasses import dataclass

from src.core.errors import InvalidFilterRegistration
from src.core.logging import get_logger
from src.filters.spec import FilterKind, FilterOperator
from src.health.derivation import STATUS_FILTERS

logger = get_logger(__name__)

_ALL_OPERATORS = frozenset(FilterOperator)


@dataclass(frozen=True)
class FilterDefinition:
    kind: FilterKind
    operators: frozenset[FilterOperator]
    exclusive: bool = False
    depends_on: FilterKind | None = None
    choices: tuple[str, ...] | None = None   # None = free values
    requires_attribute: bool = False


class FilterRegistry:
    """Registered filter definitions keyed by kind."""

    def __init__(self):
        self._defs: dict[FilterKind, FilterDefinition] = {}

    def register(self, definition: FilterDefinition) -> None:
        """Add or replace a definition.

        Raises
        ------
        InvalidFilterRegistration
            If ``depends_on`` names an unregistered kind or closes a cycle.
        """
        dep = definition.depends_on
        if dep is not None:
            if dep == definition.kind:
                raise InvalidFilterRegistration(f"Filter '{dep.value}' cannot depend on itself")
            if dep not in self._defs:
                raise InvalidFilterRegistration(
                    f"Filter '{definition.kind.value}' depends on unregistered filter '{dep.value}'"
                )
            seen: list[FilterKind] = [definition.kind]
            current: FilterKind | None = dep
            while current is not None:
                if current in seen:
                    chain = " -> ".join(k.value for k in seen + [current])
                    raise InvalidFilterRegistration(f"Cyclic filter dependency: {chain}")
                seen.append(current)
                current = self._defs[current].depends_on if current in self._defs else None

        if not definition.operators:
            raise InvalidFilterRegistration(f"Filter '{definition.kind.value}' allows no operators")

        self._defs[definition.kind] = definition
        logger.debug("Registered filter kind=%s depends_on=%s", definition.kind.value,
                     dep.value if dep else None)

    def get(self, kind: FilterKind) -> FilterDefinition | None:
        return self._defs.get(kind)

    def kinds(self) -> list[FilterKind]:
        return list(self._defs.keys())

    def dependents_of(self, kind: FilterKind) -> list[FilterKind]:
        return [k for k, d in self._defs.items() if d.depends_on == kind]


def default_registry() -> FilterRegistry:
    """Registry with the dashboard's standard filter kinds."""
    registry = FilterRegistry()
    eq = frozenset({FilterOperator.EQUALS})
    registry.register(FilterDefinition(FilterKind.PROVIDER, eq, exclusive=True))
    registry.register(FilterDefinition(FilterKind.ACCOUNT, eq, exclusive=True))
    registry.register(FilterDefinition(
        FilterKind.STATUS, eq, exclusive=True, choices=tuple(STATUS_FILTERS),
    ))
    registry.register(FilterDefinition(
        FilterKind.CLUSTER,
        frozenset({FilterOperator.IN, FilterOperator.NOT_IN, FilterOperator.EQUALS}),
    ))
    registry.register(FilterDefinition(
        FilterKind.TOPIC,
        frozenset({FilterOperator.IN, FilterOperator.NOT_IN, FilterOperator.EQUALS,
                   FilterOperator.CONTAINS}),
        depends_on=FilterKind.CLUSTER,
    ))
    registry.register(FilterDefinition(
        FilterKind.SEARCH,
        frozenset({FilterOperator.CONTAINS, FilterOperator.MATCHES}),
        exclusive=True,
    ))
    registry.register(FilterDefinition(FilterKind.CUSTOM, _ALL_OPERATORS, requires_attribute=True))
    return registry
