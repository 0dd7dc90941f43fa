"""
Filter Transformer -- expresses normalized FilterSpecs in a provider's
attribute vocabulary as QueryModel predicate terms.

A filter whose attribute is not carried by the event being queried becomes a
correlated subquery on the join dimension:

    join IN (SELECT uniques(join) FROM <home event> WHERE <filter> LIMIT n)

``for_aggregation`` selects the subquery limit: unbounded when the outer
query counts or aggregates (a bounded list would silently undercount), the
display limit when the caller is paginating.

Status is not a query condition.  Health comes from the derivation rule
table, so the caller derives the provider's health template first and passes
the matching entity ids as ``status_members``; the filter becomes membership
on the status attribute.
"""
from __future__ import annotations

from typing import Iterable, Sequence

from src.core.config import get_settings
from src.core.errors import UnresolvedPredicateTarget
from src.core.logging import get_logger
from src.filters.spec import FilterKind, FilterOperator, FilterSpec
from src.query.catalog import FilterVocab, ProviderDef, QueryCatalog, load_default_catalog
from src.query.model import (
    UNBOUNDED,
    Dimension,
    Operator,
    Predicate,
    PredicateGroup,
    Projection,
    QueryModel,
    SubqueryPredicate,
    Term,
)

logger = get_logger(__name__)

# Kinds that route the query (which provider / account) rather than filter it
_ROUTING_KINDS = (FilterKind.PROVIDER, FilterKind.ACCOUNT)


def _attribute_term(dim: Dimension, spec: FilterSpec) -> Term:
    values = spec.values
    op = spec.operator
    if op is FilterOperator.IN:
        return Predicate(dim, Operator.IN, values)
    if op is FilterOperator.NOT_IN:
        return Predicate(dim, Operator.NOT_IN, values)
    if op is FilterOperator.EQUALS:
        if len(values) == 1:
            return Predicate(dim, Operator.EQUALS, values)
        return Predicate(dim, Operator.IN, values)

    pattern_op = Operator.LIKE if op is FilterOperator.CONTAINS else Operator.RLIKE
    terms = [Predicate(dim, pattern_op, (v,)) for v in values]
    if len(terms) == 1:
        return terms[0]
    return PredicateGroup(tuple(terms))


def _status_term(vocab: FilterVocab, members: Sequence[str] | None) -> Term:
    if vocab.attribute is None or vocab.health is None:
        raise UnresolvedPredicateTarget(f"status (no health template for {vocab.home})")
    if members is None:
        raise UnresolvedPredicateTarget(f"status (health of {vocab.home} entities not resolved)")
    # empty membership raises InvalidQueryModel rather than widening to every entity
    return Predicate(vocab.attribute, Operator.IN, tuple(members))


def _subquery(
    provider: ProviderDef,
    vocab: FilterVocab,
    term: Term,
    for_aggregation: bool,
    display_limit: int,
) -> SubqueryPredicate:
    home = provider.entity(vocab.home)
    if home is None or vocab.join is None:
        raise UnresolvedPredicateTarget(f"{vocab.kind} (no join path in {provider.name})")
    missing = sorted(term.references - home.attributes)
    if missing:
        raise UnresolvedPredicateTarget(", ".join(missing))

    subquery = QueryModel(
        source=home.event,
        projections=(Projection("uniques(" + " OR ".join(vocab.join.names) + ")"),),
        predicates=(term,),
        limit=UNBOUNDED if for_aggregation else display_limit,
        attributes=home.attributes,
    )
    return SubqueryPredicate(dimension=vocab.join, subquery=subquery)


def transform(
    specs: Iterable[FilterSpec],
    provider: str | ProviderDef,
    *,
    entity_type: str,
    scope: str | None = None,
    for_aggregation: bool,
    catalog: QueryCatalog | None = None,
    display_limit: int | None = None,
    status_members: Sequence[str] | None = None,
) -> list[Term]:
    """Translate *specs* into predicate terms for a query over *provider*.

    Parameters
    ----------
    entity_type : str
        Entity type the result rows represent (search matches its name).
    scope : str, optional
        Entity type whose event the query reads; defaults to *entity_type*.
    for_aggregation : bool
        True when the query counts/aggregates (unbounded subqueries), False
        for paginated display (subqueries bounded by the display limit).
    status_members : sequence of str, optional
        Ids of the entities whose derived health matches the status filter.
        Required when *specs* carry a status selection.

    Raises
    ------
    UnresolvedPredicateTarget
        If a filter cannot be expressed in the provider's vocabulary, or a
        status selection arrives without resolved members.
    InvalidQueryModel
        If *status_members* is empty; callers short-circuit that case.
    """
    if isinstance(provider, str):
        catalog = catalog or load_default_catalog()
        provider_def = catalog.provider(provider)
        if provider_def is None:
            raise UnresolvedPredicateTarget(f"provider {provider}")
    else:
        provider_def = provider
    scope = scope or entity_type
    if display_limit is None:
        display_limit = get_settings().display_limit

    terms: list[Term] = []
    for spec in specs:
        if spec.is_empty or spec.kind in _ROUTING_KINDS:
            continue

        if spec.kind is FilterKind.SEARCH:
            entity = provider_def.entity(entity_type)
            if entity is None:
                raise UnresolvedPredicateTarget(f"search on {entity_type}")
            terms.append(_attribute_term(entity.name_dimension, spec))
            continue

        if spec.kind is FilterKind.CUSTOM:
            terms.append(_attribute_term(Dimension.of(spec.attribute or ""), spec))
            continue

        vocab = provider_def.filters.get(spec.kind.value)
        if vocab is None:
            raise UnresolvedPredicateTarget(f"{spec.kind.value} (not supported by {provider_def.name})")

        if spec.kind is FilterKind.STATUS:
            term = _status_term(vocab, status_members)
        else:
            if vocab.attribute is None:
                raise UnresolvedPredicateTarget(spec.kind.value)
            term = _attribute_term(vocab.attribute, spec)

        if scope in vocab.local_to:
            terms.append(term)
        else:
            terms.append(_subquery(provider_def, vocab, term, for_aggregation, display_limit))

    logger.debug("Transformed %d filter terms for %s/%s (aggregation=%s)",
                 len(terms), provider_def.name, entity_type, for_aggregation)
    return terms
