"""Pydantic models for derived records: activity feed entries, lifecycle alerts, preferences."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import Field

from src.models.base import VitalinkBase, utc_now


# ---------- Activity feed ----------

class FeedEntry(VitalinkBase):
    id: uuid.UUID | None = None
    user_id: uuid.UUID
    action_type: str
    action_text: str
    source_table: str
    source_id: str
    measurement_date: date | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    dismissed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


# ---------- Lifecycle alerts ----------

class LifecycleAlert(VitalinkBase):
    id: uuid.UUID | None = None
    user_id: uuid.UUID  # subject of the alert
    recipient_id: uuid.UUID  # who is notified (the user or one of their trainers)
    alert_type: str
    message: str
    alert_date: date
    source_table: str | None = None
    source_id: str | None = None
    is_read: bool = False
    dismissed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class AlertUpdate(VitalinkBase):
    is_read: bool | None = None
    dismissed: bool | None = None


# ---------- Preferences ----------

class NotificationPreferences(VitalinkBase):
    """Per-recipient notification switches. Missing row means every category is on."""

    recipient_id: uuid.UUID
    integration_issues: bool = True
    client_alerts: bool = True

    def allows(self, category: str) -> bool:
        return bool(getattr(self, category, True))


class SynthesizeRequest(VitalinkBase):
    category: str
