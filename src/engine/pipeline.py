"""
Dashboard pipeline -- orchestrates normalize -> transform -> build -> cache ->
execute -> derive -> group for every metric a dashboard shows.

One ``refresh`` runs per user interaction (filter change, time-range change,
poll tick).  Query execution is the only suspension point.  Each refresh is
tagged with a monotonically increasing sequence number; when it resolves,
its sequence is compared with the latest issued one and a superseded
snapshot is returned flagged instead of being published.

A status filter is resolved once per refresh, before the metrics run: the
provider's health template is derived with the same rule table the lists
use, and the matching entity ids become a membership filter.  Listed
entities of that type are also checked against their own derived status, so
a status-filtered list never disagrees with an unfiltered one.

Every refresh yields a snapshot: metrics that fail carry typed errors,
upstream failures fall back to stale cache entries flagged ``stale``, and
dropped filters / skipped rows are recorded as warnings.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.core.config import Settings, get_settings
from src.core.errors import EngineError, UpstreamExecutionError
from src.core.logging import get_logger
from src.core.utils import timer
from src.engine.cache import QueryCache, make_key
from src.engine.executor import QueryExecutor, ResultShape
from src.engine.topology import TopologyClient
from src.filters.normalizer import NormalizedFilters, normalize
from src.filters.registry import FilterRegistry, default_registry
from src.filters.spec import FilterKind, Selection
from src.filters.transformer import transform
from src.health.derivation import (
    DerivedEntityMetric,
    derive_batch,
    to_number,
)
from src.health.grouping import (
    GroupedCollection,
    HealthSummary,
    group,
    status_members,
    summarize_health,
)
from src.query.builder import parse_time_range, resolve
from src.query.catalog import MetricTemplate, QueryCatalog, load_default_catalog
from src.query.model import Dimension

logger = get_logger(__name__)


class DashboardRequest(BaseModel):
    """What one dashboard view asks the pipeline for."""

    selection: Selection
    metric_ids: list[str] = Field(..., description="Catalog metric ids, e.g. ['UNHEALTHY_CLUSTERS']")
    facet: list[str | list[str]] | None = Field(
        None, description="Replaces the template facet; a nested list is an either-name dimension",
    )
    group_by: Literal["health_status", "alert_severity", "entity_type", "provider"] = "health_status"
    for_aggregation: bool | None = Field(
        None, description="Override the template's aggregation/display purpose",
    )
    limit: int | None = Field(None, description="Outer LIMIT override for paginated display")
    with_severities: bool = Field(False, description="Attach alert severities from entity search")


class MetricResult:
    def __init__(
        self,
        metric_id: str,
        provider: str,
        query: str = "",
        rows: list[dict[str, Any]] | None = None,
        metrics: list[DerivedEntityMetric] | None = None,
        grouped: GroupedCollection | None = None,
        summary: HealthSummary | None = None,
        value: dict[str, float | None] | None = None,
        errors: list[EngineError] | None = None,
        warnings: list[EngineError] | None = None,
        skipped_rows: int = 0,
        cached: bool = False,
        stale: bool = False,
        latency_ms: int = 0,
    ):
        self.metric_id = metric_id
        self.provider = provider
        self.query = query
        self.rows = rows or []
        self.metrics = metrics or []
        self.grouped = grouped
        self.summary = summary
        self.value = value or {}
        self.errors = errors or []
        self.warnings = warnings or []
        self.skipped_rows = skipped_rows
        self.cached = cached
        self.stale = stale
        self.latency_ms = latency_ms

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class DashboardSnapshot:
    sequence: int
    provider: str
    account_id: str
    results: dict[str, MetricResult] = field(default_factory=dict)
    warnings: list[EngineError] = field(default_factory=list)
    superseded: bool = False
    latency_ms: int = 0

    @property
    def stale(self) -> bool:
        return any(r.stale for r in self.results.values())

    def result(self, metric_id: str) -> MetricResult | None:
        return self.results.get(metric_id)


@dataclass
class StatusSelection:
    """A status filter resolved against the provider's health template.

    ``members`` holds the ids of the ``home`` entities whose derived health
    matches ``values``; ``error`` is set when health could not be derived, in
    which case status-filtered metrics fail rather than widen.
    """
    values: tuple[str, ...]
    home: str
    members: tuple[str, ...] | None = None
    error: EngineError | None = None
    stale: bool = False
    warnings: list[EngineError] = field(default_factory=list)

    def selects(self, metric: DerivedEntityMetric) -> bool:
        return any(metric.matches_status(v) for v in self.values)


def _dimension(raw: str | list[str]) -> Dimension:
    return Dimension.of(raw) if isinstance(raw, str) else Dimension(names=tuple(raw))


class DashboardPipeline:
    """Runs dashboard refreshes against one explicitly owned cache.

    Parameters
    ----------
    executor : QueryExecutor
        The external query execution service (usually a RetryingExecutor).
    cache : QueryCache, optional
        Created per session when omitted; torn down with the pipeline.
    topology : TopologyClient, optional
        Entity search client, needed for ``with_severities`` requests.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        cache: QueryCache | None = None,
        catalog: QueryCatalog | None = None,
        registry: FilterRegistry | None = None,
        topology: TopologyClient | None = None,
        settings: Settings | None = None,
    ):
        self._executor = executor
        self._settings = settings or get_settings()
        self._cache = cache or QueryCache()
        self._catalog = catalog or load_default_catalog()
        self._registry = registry or default_registry()
        self._topology = topology
        self._sequence = 0
        self._closed = False
        self._latest: DashboardSnapshot | None = None

    # ── Lifecycle ───────────────────────────────────────

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def latest(self) -> DashboardSnapshot | None:
        """Most recent snapshot that was not superseded."""
        return self._latest

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Tear down: results of in-flight refreshes will be discarded."""
        self._closed = True
        self._sequence += 1
        self._cache.invalidate()
        logger.info("Pipeline closed at sequence=%d", self._sequence)

    # ── Refresh ─────────────────────────────────────────

    async def refresh(self, request: DashboardRequest) -> DashboardSnapshot:
        self._sequence += 1
        seq = self._sequence

        selection = request.selection
        normalized = normalize(selection.to_raw_filters(), self._registry)
        provider = normalized.first_value(FilterKind.PROVIDER) or selection.provider
        account_id = normalized.first_value(FilterKind.ACCOUNT) or selection.account_id
        logger.info("Pipeline.refresh | seq=%d | provider=%s | account=%s | metrics=%s",
                    seq, provider, account_id, request.metric_ids)

        snapshot = DashboardSnapshot(
            sequence=seq, provider=provider, account_id=account_id,
            warnings=list(normalized.warnings),
        )
        if self._closed:
            snapshot.superseded = True
            return snapshot

        with timer() as t:
            status = await self._resolve_status(provider, account_id, normalized, request)
            results = await asyncio.gather(*(
                self._timed_metric(metric_id, provider, account_id, normalized, request, status)
                for metric_id in request.metric_ids
            ))
        snapshot.results = {r.metric_id: r for r in results}
        snapshot.latency_ms = t["elapsed_ms"]

        # Stale-response discard: only the latest issued sequence may publish
        if self._closed or seq != self._sequence:
            snapshot.superseded = True
            logger.info("Discarding superseded refresh seq=%d (latest=%d)", seq, self._sequence)
            return snapshot

        self._latest = snapshot
        return snapshot

    async def _resolve_status(
        self,
        provider: str,
        account_id: str,
        normalized: NormalizedFilters,
        request: DashboardRequest,
    ) -> StatusSelection | None:
        """Derive the provider's health template and pick the status members.

        Runs unbounded and without the status filter itself, through the same
        cache and rule table as any listed metric.
        """
        values = normalized.values_for(FilterKind.STATUS)
        provider_def = self._catalog.provider(provider)
        vocab = provider_def.filters.get(FilterKind.STATUS.value) if provider_def else None
        if not values or vocab is None or vocab.health is None:
            # transform reports an unsupported status per metric
            return None

        others = NormalizedFilters(
            specs=[s for s in normalized.specs if s.kind is not FilterKind.STATUS],
        )
        health_request = request.model_copy(update={
            "facet": None, "limit": None, "for_aggregation": True, "with_severities": False,
        })
        health = await self._run_metric(vocab.health, provider, account_id, others, health_request)

        selection = StatusSelection(values=values, home=vocab.home)
        if health.errors and not health.rows:
            selection.error = health.errors[0]
            logger.warning("Status filter unavailable for %s: %s", provider, selection.error)
            return selection
        selection.members = status_members(health.metrics, values)
        selection.stale = health.stale
        selection.warnings = list(health.errors)
        logger.info("Status %s matched %d %s entities", "/".join(values),
                    len(selection.members), vocab.home)
        return selection

    async def _timed_metric(self, metric_id: str, *args: Any) -> MetricResult:
        with timer() as t:
            result = await self._run_metric(metric_id, *args)
        result.latency_ms = t["elapsed_ms"]
        return result

    async def _run_metric(
        self,
        metric_id: str,
        provider: str,
        account_id: str,
        normalized: NormalizedFilters,
        request: DashboardRequest,
        status: StatusSelection | None = None,
    ) -> MetricResult:
        result = MetricResult(metric_id=metric_id, provider=provider)

        # 1. Template + filters -> resolved model
        try:
            template = self._catalog.template(provider, metric_id)
        except EngineError as exc:
            logger.warning("Cannot build %s/%s: %s", provider, metric_id, exc)
            result.errors.append(exc)
            return result

        if status is not None:
            if status.error is not None:
                result.errors.append(status.error)
                return result
            result.stale = status.stale
            result.warnings.extend(status.warnings)
            if not status.members:
                # nothing is in the requested status: empty result, no query
                await self._derive(result, template, account_id, request, status)
                return result

        try:
            for_aggregation = (
                request.for_aggregation if request.for_aggregation is not None
                else template.for_aggregation
            )
            terms = transform(
                normalized.specs,
                self._catalog.provider(provider),  # type: ignore[arg-type]
                entity_type=template.entity_type,
                scope=template.scope,
                for_aggregation=for_aggregation,
                display_limit=self._settings.display_limit,
                status_members=status.members if status is not None else None,
            )
            facet = [_dimension(f) for f in request.facet] if request.facet is not None else None
            model = resolve(
                template.model,
                terms,
                facet,
                parse_time_range(request.selection.time_range),
                limit=request.limit,
                metric_id=metric_id,
            )
        except EngineError as exc:
            logger.warning("Cannot build %s/%s: %s", provider, metric_id, exc)
            result.errors.append(exc)
            return result

        result.query = model.to_nrql()
        key = make_key(model, account_id)

        # 2. Cache, then upstream with stale fallback
        rows = self._cache.get(key)
        if rows is not None:
            result.cached = True
        else:
            try:
                rows = await self._executor.execute(
                    result.query, account_id, ResultShape(template.result_shape),
                )
                self._cache.set(key, rows, data_class=template.data_class)
            except Exception as exc:
                if not isinstance(exc, UpstreamExecutionError):
                    logger.exception("Query execution failed for %s", metric_id)
                    exc = UpstreamExecutionError(f"Execution error: {exc}")
                result.errors.append(exc)
                rows = self._cache.get_stale(key)
                if rows is not None:
                    result.stale = True
                    logger.warning("Serving stale %s for %s", metric_id, provider)
                else:
                    rows = []

        result.rows = list(rows)

        # 3. Derive + group
        await self._derive(result, template, account_id, request, status)
        return result

    async def _derive(
        self,
        result: MetricResult,
        template: MetricTemplate,
        account_id: str,
        request: DashboardRequest,
        status: StatusSelection | None = None,
    ) -> None:
        if template.result_shape == "single":
            first = result.rows[0] if result.rows and isinstance(result.rows[0], dict) else {}
            result.value = {k: to_number(v) for k, v in first.items()}
            return
        if template.result_shape == "timeseries":
            return

        severities: dict[str, str] = {}
        if request.with_severities and self._topology is not None and result.rows:
            try:
                severities = await self._topology.severities(
                    template.provider, template.entity_type, account_id,
                )
            except Exception as exc:
                if not isinstance(exc, EngineError):
                    logger.exception("Severity lookup failed for %s", template.metric_id)
                    exc = UpstreamExecutionError(f"Entity search error: {exc}")
                result.warnings.append(exc)

        batch = derive_batch(result.rows, template.provider, template.entity_type, severities)
        metrics = batch.metrics
        if status is not None and template.entity_type == status.home:
            # listed entities keep exactly the status their derived health gives them
            metrics = [m for m in metrics if status.selects(m)]
        result.metrics = metrics
        result.skipped_rows = batch.skipped
        result.warnings.extend(batch.errors)
        result.grouped = group(metrics, request.group_by)
        if template.summary == "health":
            result.summary = summarize_health(metrics)
