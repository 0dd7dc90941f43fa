"""
Typed error taxonomy for the query engine.

Structural and upstream failures are raised and surfaced to the caller.
Recoverable conditions (a dropped filter, a skipped row) are recorded as
instances of these classes on result objects instead of being raised.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for every engine error."""


class TemplateNotFound(EngineError):
    """No query template is registered for a (provider, metric) pair."""

    def __init__(self, provider: str, metric_id: str):
        self.provider = provider
        self.metric_id = metric_id
        super().__init__(f"No query template for provider '{provider}' and metric '{metric_id}'")


class InvalidFilterOperator(EngineError):
    """A filter's operator is not valid for its kind (recoverable)."""

    def __init__(self, kind: str, operator: str, allowed: list[str] | None = None):
        self.kind = kind
        self.operator = operator
        self.allowed = allowed or []
        detail = f" Allowed: {', '.join(self.allowed)}" if self.allowed else ""
        super().__init__(f"Operator '{operator}' is not valid for filter '{kind}'.{detail}")


class InvalidFilterKind(EngineError):
    """A raw selection names a filter kind that is not registered (recoverable)."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unknown filter kind '{kind}'")


class InvalidFilterValue(EngineError):
    """A filter value is outside the kind's allowed choices (recoverable)."""

    def __init__(self, kind: str, value: str, choices: list[str] | None = None):
        self.kind = kind
        self.value = value
        self.choices = choices or []
        detail = f" Allowed: {', '.join(self.choices)}" if self.choices else ""
        super().__init__(f"Value '{value}' is not valid for filter '{kind}'.{detail}")


class InvalidFilterRegistration(EngineError):
    """A filter definition cannot be registered (unknown or cyclic dependency)."""


class UnresolvedPredicateTarget(EngineError):
    """A predicate or facet references a dimension no query level exposes."""

    def __init__(self, dimension: str, metric_id: str | None = None):
        self.dimension = dimension
        self.metric_id = metric_id
        where = f" in template '{metric_id}'" if metric_id else ""
        super().__init__(f"Dimension '{dimension}' is not exposed by any query level{where}")


class InvalidQueryModel(EngineError):
    """A QueryModel violates a structural invariant."""


class UpstreamExecutionError(EngineError):
    """The external query execution service failed."""

    def __init__(self, message: str, attempts: int = 1):
        self.attempts = attempts
        super().__init__(message)


class MalformedRow(EngineError):
    """A result row cannot be turned into an entity row."""
