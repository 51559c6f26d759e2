"""Resolved unified-metric reads for dashboard widgets."""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import IngestSettings, InternalUserId, Stores
from src.models.metrics import LatestMetric, MetricHistoryResponse
from src.wearables.conflict_resolver import (
    AliasConflictError,
    get_latest_values,
    get_widget_history,
    history_window,
)

router = APIRouter(prefix="/metrics", tags=["metrics"])

# Widgets shown on a fresh dashboard
DEFAULT_WIDGET_METRICS: list[str] = [
    "Recovery Score",
    "Day Strain",
    "Sleep Duration",
    "Steps",
    "Active Calories",
    "Training Readiness",
    "Sleep Efficiency",
    "HRV RMSSD",
    "VO2Max",
    "Weight",
    "Body Fat Percentage",
    "Max Heart Rate",
    "Resting Heart Rate",
]


@router.get("/history", response_model=MetricHistoryResponse)
async def metric_history(
    user_id: InternalUserId,
    stores: Stores,
    config: IngestSettings,
    metric: list[str] | None = Query(default=None),
    days: int | None = Query(default=None, ge=1, le=90),
    end_date: date | None = Query(default=None),
) -> Any:
    """One resolved series per requested metric; metrics with no data are omitted."""
    metrics = metric or DEFAULT_WIDGET_METRICS
    window = days or config.history_window_days
    try:
        history = await get_widget_history(
            stores.metrics, user_id, metrics, days=window, today=end_date, config=config
        )
    except AliasConflictError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    start, end = history_window(window, end_date)
    return MetricHistoryResponse(
        user_id=user_id, start_date=start, end_date=end, metrics=history
    )


@router.get("/latest", response_model=list[LatestMetric])
async def latest_metrics(
    user_id: InternalUserId,
    stores: Stores,
    config: IngestSettings,
    metric: list[str] | None = Query(default=None),
    days: int = Query(default=30, ge=1, le=90),
) -> Any:
    """Most recent resolved value per metric (dashboard cards)."""
    try:
        latest = await get_latest_values(
            stores.metrics, user_id, metric or DEFAULT_WIDGET_METRICS, days=days, config=config
        )
    except AliasConflictError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return [
        LatestMetric(metric_name=name, date=point.date, value=point.value, source=point.source)
        for name, point in latest.items()
    ]
