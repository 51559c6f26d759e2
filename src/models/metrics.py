"""Pydantic models for unified metrics: raw provider rows, resolved history, requests."""

from __future__ import annotations

import math
import uuid
from datetime import date, datetime
from typing import Any

from pydantic import Field, field_validator

from src.models.base import VitalinkBase


# ---------- Raw rows (store boundary) ----------

class RawMetricRow(VitalinkBase):
    """One observation from one provider for one user, metric and day.

    Rows are append-only evidence; conflict resolution selects among them
    at read time and never merges values in place.
    """

    id: uuid.UUID | None = None
    user_id: uuid.UUID
    metric_name: str = Field(min_length=1)
    value: float
    unit: str = ""
    measurement_date: date
    source: str
    priority: int = Field(default=5, ge=0)
    confidence_score: int = Field(default=50, ge=0, le=100)
    category: str | None = None
    external_id: str | None = None
    created_at: datetime | None = None

    @field_validator("value")
    @classmethod
    def _finite(cls, v: float) -> float:
        if math.isnan(v) or math.isinf(v):
            raise ValueError("value must be a finite number")
        return v

    @field_validator("source")
    @classmethod
    def _upper_source(cls, v: str) -> str:
        return v.strip().upper()


# ---------- Resolved output ----------

class WidgetHistoryPoint(VitalinkBase):
    date: date
    value: float
    source: str | None = Field(default=None, exclude=True)


class MetricHistoryResponse(VitalinkBase):
    user_id: uuid.UUID
    start_date: date
    end_date: date
    metrics: dict[str, list[WidgetHistoryPoint]]


class LatestMetric(VitalinkBase):
    metric_name: str
    date: date
    value: float
    source: str | None = None


# ---------- Integration requests ----------

class BackfillRequest(VitalinkBase):
    days_back: int | None = Field(default=None, alias="daysBack", ge=0)
    provider: str | None = None


class ScheduledSyncRequest(VitalinkBase):
    days_back: int | None = Field(default=None, alias="daysBack", ge=0)
    provider: str | None = None


class TestWebhookRequest(VitalinkBase):
    dry_run: bool = Field(default=True, alias="dryRun")
    type: str = "daily"
    provider: str = "WHOOP"


class TestWebhookResult(VitalinkBase):
    type: str
    provider: str
    signature_valid: bool = Field(serialization_alias="signatureValid")
    processed: bool
    payload: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
