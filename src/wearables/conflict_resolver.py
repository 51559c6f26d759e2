"""Read-time conflict resolution for unified metrics.

For a user and a set of requested canonical metrics:

1. Expand each canonical metric to its alias set and build a reverse index
   (stored name → requested canonical metric).  A stored name that would
   count toward two requested metrics is an error, not a silent double count.
2. Fetch every raw row for the expanded names in the window with one query.
3. Keep one row per (canonical metric, date): lowest priority, then highest
   confidence, then first seen.  Rows are pre-sorted on a total key so the
   result does not depend on the order rows arrived in.
4. Emit date-ascending points per metric; metrics with no rows are omitted.

Raw rows are never modified; resolution is recomputed on every read.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterable
from uuid import UUID

from src.models.metrics import RawMetricRow, WidgetHistoryPoint
from src.wearables.base import MetricStore
from src.wearables.config_loader import IngestConfig, get_ingest_config

logger = logging.getLogger("vitalink.wearables.resolver")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class AliasConflictError(ValueError):
    """A stored metric name maps to more than one requested canonical metric."""


# ---------------------------------------------------------------------------
# Step 1: alias expansion
# ---------------------------------------------------------------------------


def build_alias_index(
    metrics: Iterable[str], config: IngestConfig | None = None
) -> dict[str, str]:
    """Map every stored name that satisfies a requested metric back to that metric.

    Raises:
        AliasConflictError: If one stored name would satisfy two requested metrics.
    """
    config = config or get_ingest_config()
    index: dict[str, str] = {}
    for requested in dict.fromkeys(metrics):
        for name in sorted(config.alias_set(requested)):
            owner = index.get(name)
            if owner is not None and owner != requested:
                raise AliasConflictError(
                    f"Metric name {name!r} would count toward both "
                    f"{owner!r} and {requested!r}"
                )
            index[name] = requested
    return index


# ---------------------------------------------------------------------------
# Step 3: precedence
# ---------------------------------------------------------------------------


def scan_key(row: RawMetricRow) -> tuple:
    """Total ordering used to pre-sort rows before the resolution scan.

    Date, priority and confidence carry the precedence rules.  The remaining
    fields only fix the position of otherwise-equal rows so that the
    "first seen" row is the same for any input order.
    """
    created = row.created_at or _EPOCH
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (
        row.measurement_date,
        row.priority,
        -row.confidence_score,
        row.created_at is None,
        created,
        str(row.id or ""),
        row.source,
        row.external_id or "",
        row.value,
    )


def beats(candidate: RawMetricRow, current: RawMetricRow) -> bool:
    """True if ``candidate`` should replace ``current`` for the same metric and date."""
    if candidate.priority != current.priority:
        return candidate.priority < current.priority
    if candidate.confidence_score != current.confidence_score:
        return candidate.confidence_score > current.confidence_score
    return False  # first seen wins


def select_best(rows: Iterable[RawMetricRow]) -> RawMetricRow | None:
    """Return the winning row among rows for one (metric, date), or None if empty."""
    best: RawMetricRow | None = None
    for row in sorted(rows, key=scan_key):
        if best is None or beats(row, best):
            best = row
    return best


def resolve_rows(
    rows: Iterable[RawMetricRow],
    alias_index: dict[str, str],
    config: IngestConfig | None = None,
) -> dict[str, dict[date, RawMetricRow]]:
    """Pick one row per (canonical metric, date).

    Rows whose name is not in the index are ignored.  Rows with a negative
    value for a non-negative metric are skipped individually.
    """
    config = config or get_ingest_config()
    best: dict[str, dict[date, RawMetricRow]] = {}

    for row in sorted(rows, key=scan_key):
        canonical = alias_index.get(row.metric_name)
        if canonical is None:
            continue
        definition = config.metrics.get(config.canonical_for(canonical) or canonical)
        if definition is not None and definition.non_negative and row.value < 0:
            logger.info(
                "Skipping negative %s=%s for %s on %s",
                row.metric_name, row.value, row.user_id, row.measurement_date,
            )
            continue

        per_date = best.setdefault(canonical, {})
        current = per_date.get(row.measurement_date)
        if current is None or beats(row, current):
            per_date[row.measurement_date] = row

    return best


# ---------------------------------------------------------------------------
# Step 2 + 4: fetch and emit
# ---------------------------------------------------------------------------


def history_window(days: int, today: date | None = None) -> tuple[date, date]:
    """Return the inclusive (start, end) window of ``days`` days ending today."""
    end = today or date.today()
    return end - timedelta(days=max(days, 1) - 1), end


async def get_widget_history(
    store: MetricStore,
    user_id: UUID,
    metrics: Iterable[str],
    days: int | None = None,
    today: date | None = None,
    config: IngestConfig | None = None,
) -> dict[str, list[WidgetHistoryPoint]]:
    """Return one resolved, date-ascending series per requested metric.

    Metrics with no rows in the window are absent from the result.

    Raises:
        AliasConflictError: If two requested metrics share a stored name.
    """
    config = config or get_ingest_config()
    requested = list(dict.fromkeys(metrics))
    if not requested:
        return {}

    alias_index = build_alias_index(requested, config)
    start, end = history_window(days or config.history_window_days, today)

    rows = await store.fetch_raw_rows(user_id, sorted(alias_index), start, end)
    resolved = resolve_rows(rows, alias_index, config)

    history: dict[str, list[WidgetHistoryPoint]] = {}
    for metric in requested:
        per_date = resolved.get(metric)
        if not per_date:
            continue
        history[metric] = [
            WidgetHistoryPoint(date=d, value=row.value, source=row.source)
            for d, row in sorted(per_date.items())
        ]

    logger.debug(
        "Resolved %d/%d metrics for %s from %d rows (%s..%s)",
        len(history), len(requested), user_id, len(rows), start, end,
    )
    return history


async def get_latest_values(
    store: MetricStore,
    user_id: UUID,
    metrics: Iterable[str],
    days: int | None = None,
    today: date | None = None,
    config: IngestConfig | None = None,
) -> dict[str, WidgetHistoryPoint]:
    """Return the most recent resolved point per metric within the window."""
    history = await get_widget_history(store, user_id, metrics, days, today, config)
    return {metric: points[-1] for metric, points in history.items()}
