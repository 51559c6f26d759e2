"""Derive activity feed entries and lifecycle alerts from unified metrics.

Three categories are supported:

    workout_completed  — one feed entry per workout session, enriched with the
                         session's calorie row when present
    integration_stale  — a daily alert when a connected provider has not
                         synced for ``stale_after_days``
    overtraining_risk  — a daily alert when resolved Day Strain is above the
                         strain threshold on a day whose resolved Recovery
                         Score is below the recovery threshold

Every insert is preceded by an existence check: workouts by (source table,
source id), daily alerts by (recipient, user, alert type, day).  Running the
synthesizer twice over unchanged data creates nothing the second time.
Lifecycle alerts fan out to the user and their trainers, each gated by the
recipient's notification preferences (absent preferences mean notify).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from src.models.alerts import FeedEntry, LifecycleAlert
from src.models.metrics import RawMetricRow
from src.wearables.base import (
    AlertStore,
    MetricStore,
    PersistenceError,
    ProviderToken,
    TokenStore,
)
from src.wearables.config_loader import IngestConfig, get_ingest_config
from src.wearables.conflict_resolver import get_widget_history
from src.wearables.realtime import SubscriptionRegistry

logger = logging.getLogger("vitalink.wearables.alerts")

FEED_TABLE = "activity_feed"
ALERTS_TABLE = "lifecycle_alerts"
METRICS_SOURCE_TABLE = "unified_metrics"
TOKENS_SOURCE_TABLE = "terra_tokens"

WORKOUT_METRIC = "Workout Duration"
STRAIN_METRIC = "Day Strain"
RECOVERY_METRIC = "Recovery Score"


class AlertCategory(str, Enum):
    WORKOUT_COMPLETED = "workout_completed"
    INTEGRATION_STALE = "integration_stale"
    OVERTRAINING_RISK = "overtraining_risk"

    @property
    def preference(self) -> str | None:
        """Notification preference that gates this category, if any."""
        return {
            AlertCategory.INTEGRATION_STALE: "integration_issues",
            AlertCategory.OVERTRAINING_RISK: "client_alerts",
        }.get(self)


@dataclass
class SynthesisSummary:
    """Counts from one synthesizer run.

    ``skipped`` covers records that already existed and recipients who opted
    out.  ``failed`` counts users, rows and recipients whose store calls
    raised; the run continues past them.
    """

    category: str
    users_scanned: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "usersScanned": self.users_scanned,
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class AlertSynthesizer:
    """Scan recent metrics and connection state, and emit derived records."""

    def __init__(
        self,
        metric_store: MetricStore,
        token_store: TokenStore,
        alert_store: AlertStore,
        config: IngestConfig | None = None,
        registry: SubscriptionRegistry | None = None,
    ) -> None:
        self._metrics = metric_store
        self._tokens = token_store
        self._alerts = alert_store
        self._config = config or get_ingest_config()
        self._registry = registry

    async def run(
        self,
        category: AlertCategory | str,
        user_ids: list[UUID] | None = None,
        today: date | None = None,
    ) -> SynthesisSummary:
        """Synthesize one category for the given users (default: every connected user).

        Raises:
            ValueError: If ``category`` is unknown.
        """
        category = AlertCategory(category)
        today = today or date.today()
        summary = SynthesisSummary(category=category.value)

        tokens = await self._tokens.get_active_tokens()
        if user_ids is not None:
            wanted = set(user_ids)
            tokens = [t for t in tokens if t.user_id in wanted]
            users = list(dict.fromkeys(user_ids))
        else:
            users = list(dict.fromkeys(t.user_id for t in tokens))

        for user_id in users:
            summary.users_scanned += 1
            try:
                if category is AlertCategory.WORKOUT_COMPLETED:
                    await self._workouts(user_id, today, summary)
                elif category is AlertCategory.INTEGRATION_STALE:
                    user_tokens = [t for t in tokens if t.user_id == user_id]
                    await self._stale(user_id, user_tokens, today, summary)
                else:
                    await self._overtraining(user_id, today, summary)
            except PersistenceError as exc:
                summary.failed += 1
                summary.errors.append(f"user {user_id}: {exc}")
                logger.warning("%s synthesis failed for %s: %s", category.value, user_id, exc)

        logger.info(
            "Alert synthesis %s: %d created, %d skipped, %d failed (%d users)",
            category.value, summary.created, summary.skipped, summary.failed,
            summary.users_scanned,
        )
        return summary

    # ------------------------------------------------------------------
    # Workouts
    # ------------------------------------------------------------------

    async def _workouts(self, user_id: UUID, today: date, summary: SynthesisSummary) -> None:
        start = today - timedelta(days=self._config.alerts.workout_lookback_days)
        names = sorted(self._config.alias_set(WORKOUT_METRIC))
        rows = await self._metrics.fetch_raw_rows(user_id, names, start, today)

        seen: set[str] = set()
        for row in rows:
            source_id = row.external_id or (str(row.id) if row.id else None)
            if source_id is None or source_id in seen:
                continue
            seen.add(source_id)

            try:
                exists = await self._alerts.feed_entry_exists(METRICS_SOURCE_TABLE, source_id)
            except PersistenceError as exc:
                summary.failed += 1
                summary.errors.append(f"feed entry {source_id}: {exc}")
                logger.warning("Feed lookup %s for %s failed: %s", source_id, user_id, exc)
                continue
            if exists:
                summary.skipped += 1
                continue

            calories = await self._companion_calories(user_id, row)
            entry = FeedEntry(
                user_id=user_id,
                action_type=AlertCategory.WORKOUT_COMPLETED.value,
                action_text=workout_text(row, calories),
                source_table=METRICS_SOURCE_TABLE,
                source_id=source_id,
                measurement_date=row.measurement_date,
                metadata={
                    "provider": row.source,
                    "duration_minutes": row.value,
                    "calories": calories.value if calories else None,
                },
            )
            try:
                saved = await self._alerts.insert_feed_entry(entry)
            except PersistenceError as exc:
                summary.failed += 1
                summary.errors.append(f"feed entry {source_id}: {exc}")
                logger.warning("Failed to insert feed entry %s for %s: %s", source_id, user_id, exc)
                continue
            summary.created += 1
            self._publish(FEED_TABLE, saved)

    async def _companion_calories(self, user_id: UUID, row: RawMetricRow) -> RawMetricRow | None:
        if not row.external_id:
            return None
        key = row.external_id + self._config.alerts.calories_suffix
        try:
            return await self._metrics.find_by_external_id(user_id, key)
        except PersistenceError as exc:
            # enrichment is optional
            logger.info("Calorie lookup %s failed: %s", key, exc)
            return None

    # ------------------------------------------------------------------
    # Stale integrations
    # ------------------------------------------------------------------

    async def _stale(
        self,
        user_id: UUID,
        tokens: list[ProviderToken],
        today: date,
        summary: SynthesisSummary,
    ) -> None:
        threshold = self._config.alerts.stale_after_days
        stale: list[str] = []
        for token in tokens:
            if token.last_sync_at is None:
                stale.append(f"{token.provider.value} has never synced")
                continue
            idle_days = (today - token.last_sync_at.date()).days
            if idle_days >= threshold:
                stale.append(f"{token.provider.value} has not synced in {idle_days} days")

        if not stale:
            return
        message = "Integration needs attention: " + "; ".join(stale) + "."
        await self._fan_out(
            user_id, AlertCategory.INTEGRATION_STALE, message, today,
            TOKENS_SOURCE_TABLE, ",".join(sorted(t.provider.value for t in tokens)), summary,
        )

    # ------------------------------------------------------------------
    # Overtraining
    # ------------------------------------------------------------------

    async def _overtraining(self, user_id: UUID, today: date, summary: SynthesisSummary) -> None:
        cfg = self._config.alerts
        history = await get_widget_history(
            self._metrics, user_id, [STRAIN_METRIC, RECOVERY_METRIC],
            days=cfg.overtraining_window_days, today=today, config=self._config,
        )
        risk_day = find_overtraining_day(
            history.get(STRAIN_METRIC, []),
            history.get(RECOVERY_METRIC, []),
            cfg.strain_threshold,
            cfg.recovery_threshold,
        )
        if risk_day is None:
            return
        day, strain, recovery = risk_day
        message = (
            f"Overtraining risk: strain {strain:.1f} with recovery {recovery:.0f}% "
            f"on {day.isoformat()}."
        )
        await self._fan_out(
            user_id, AlertCategory.OVERTRAINING_RISK, message, today,
            METRICS_SOURCE_TABLE, day.isoformat(), summary,
        )

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _fan_out(
        self,
        user_id: UUID,
        category: AlertCategory,
        message: str,
        today: date,
        source_table: str,
        source_id: str,
        summary: SynthesisSummary,
    ) -> None:
        recipients = await self._alerts.list_alert_recipients(user_id)
        if user_id not in recipients:
            recipients = [user_id, *recipients]

        for recipient_id in recipients:
            try:
                prefs = await self._alerts.get_notification_preferences(recipient_id)
                exists = await self._alerts.alert_exists(
                    recipient_id, user_id, category.value, today
                )
            except PersistenceError as exc:
                summary.failed += 1
                summary.errors.append(f"{category.value} for {recipient_id}: {exc}")
                logger.warning(
                    "Failed to check %s alert for %s: %s", category.value, recipient_id, exc
                )
                continue
            if prefs is not None and category.preference and not prefs.allows(category.preference):
                summary.skipped += 1
                logger.debug("%s opted out of %s", recipient_id, category.value)
                continue
            if exists:
                summary.skipped += 1
                continue

            alert = LifecycleAlert(
                user_id=user_id,
                recipient_id=recipient_id,
                alert_type=category.value,
                message=message,
                alert_date=today,
                source_table=source_table,
                source_id=source_id,
            )
            try:
                saved = await self._alerts.insert_alert(alert)
            except PersistenceError as exc:
                summary.failed += 1
                summary.errors.append(f"{category.value} for {recipient_id}: {exc}")
                logger.warning(
                    "Failed to insert %s alert for %s: %s", category.value, recipient_id, exc
                )
                continue
            summary.created += 1
            self._publish(ALERTS_TABLE, saved)

    def _publish(self, table: str, record: FeedEntry | LifecycleAlert) -> None:
        if self._registry is not None:
            self._registry.publish(table, record.model_dump(mode="json"))


def workout_text(row: RawMetricRow, calories: RawMetricRow | None) -> str:
    text = f"Completed a {row.value:.0f} min workout"
    if calories is not None:
        text += f" and burned {calories.value:.0f} kcal"
    return f"{text} ({row.source.title()})"


def find_overtraining_day(
    strain: list,
    recovery: list,
    strain_threshold: float,
    recovery_threshold: float,
) -> tuple[date, float, float] | None:
    """Return the latest (day, strain, recovery) where both thresholds are crossed."""
    recovery_by_day = {p.date: p.value for p in recovery}
    for point in sorted(strain, key=lambda p: p.date, reverse=True):
        rec = recovery_by_day.get(point.date)
        if rec is not None and point.value > strain_threshold and rec < recovery_threshold:
            return point.date, point.value, rec
    return None
