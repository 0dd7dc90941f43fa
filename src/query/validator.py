"""
Validates a QueryModel template before it is admitted to the catalog.

Checks performed on every level:
  1. Projection aliases are unique within the level
  2. Group-by dimensions are visible at the level (event attributes for the
     innermost level, inner facets / aliases for outer levels)
  3. Predicates only reference dimensions visible at the level
  4. Inner levels that facet are unbounded (a bounded inner facet silently
     drops entities from the outer aggregate)
  5. Only the outermost level carries a time window or TIMESERIES
  6. An outer level references at least one inner output
"""
from __future__ import annotations

from src.query.model import QueryModel, UNBOUNDED


def validate_template(model: QueryModel, name: str = "template") -> list[str]:
    """Return a list of validation error messages (empty list = model is valid)."""
    errors: list[str] = []
    levels = model.levels()
    outermost = len(levels) - 1

    for idx, level in enumerate(levels):
        label = f"{name} level {idx + 1}/{len(levels)}"
        visible = level.visible_dimensions

        aliases = [p.alias for p in level.projections if p.alias]
        dupes = sorted({a for a in aliases if aliases.count(a) > 1})
        if dupes:
            errors.append(f"{label}: duplicate projection aliases: {', '.join(dupes)}")

        for dim in level.group_by:
            missing = [n for n in dim.names if n not in visible]
            if missing:
                errors.append(
                    f"{label}: facet '{dim.render()}' is not visible here "
                    f"(missing: {', '.join(missing)})"
                )

        for pred in level.predicates:
            missing = sorted(pred.references - visible)
            if missing:
                errors.append(
                    f"{label}: predicate references unknown dimensions: {', '.join(missing)}"
                )

        if idx < outermost:
            if level.group_by and level.limit != UNBOUNDED:
                errors.append(
                    f"{label}: inner faceted level must use LIMIT {UNBOUNDED}, got {level.limit!r}"
                )
            if level.time_window is not None:
                errors.append(f"{label}: only the outermost level may carry a time window")
            if level.is_time_series:
                errors.append(f"{label}: only the outermost level may be a time series")

        if level.is_nested:
            inner_outputs = {p.alias for p in level.source.projections if p.alias}  # type: ignore[union-attr]
            if inner_outputs and not any(
                out in p.expression for p in level.projections for out in inner_outputs
            ):
                errors.append(f"{label}: outer projections do not reference any inner output")

    return errors
