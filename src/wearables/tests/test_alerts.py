"""Tests for the activity feed / lifecycle alert synthesizer."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from uuid import UUID

import pytest

from src.models.alerts import NotificationPreferences
from src.models.metrics import WidgetHistoryPoint
from src.wearables.alerts import (
    ALERTS_TABLE,
    FEED_TABLE,
    AlertCategory,
    AlertSynthesizer,
    find_overtraining_day,
    workout_text,
)
from src.wearables.base import Provider, StoreBundle
from src.wearables.config_loader import IngestConfig
from src.wearables.realtime import SubscriptionRegistry
from src.wearables.tests.conftest import (
    TEST_DATE,
    TEST_USER_ID,
    TRAINER_ID,
    make_row,
    make_token,
)


def _synthesizer(
    stores: StoreBundle, config: IngestConfig, registry: SubscriptionRegistry | None = None
) -> AlertSynthesizer:
    return AlertSynthesizer(stores.metrics, stores.tokens, stores.alerts, config, registry)


def _days_ago(days: int) -> datetime:
    return datetime.combine(TEST_DATE - timedelta(days=days), time(9), tzinfo=timezone.utc)


def _seed_workout(stores: StoreBundle, session: str = "GARMIN_run-8842", calories: float | None = 534) -> None:
    stores.metrics.add(
        make_row("Workout Duration", 47, source="GARMIN", external_id=session,
                 measurement_date=TEST_DATE - timedelta(days=1))
    )
    if calories is not None:
        stores.metrics.add(
            make_row("Workout Calories", calories, source="GARMIN",
                     external_id=f"{session}_calories",
                     measurement_date=TEST_DATE - timedelta(days=1))
        )


def _seed_overtraining(stores: StoreBundle, strain: float = 19.5, recovery: float = 25) -> None:
    day = TEST_DATE - timedelta(days=1)
    stores.metrics.add(
        make_row("Day Strain", strain, priority=1, measurement_date=day),
        make_row("Recovery Score", recovery, priority=1, measurement_date=day),
    )


# ---------------------------------------------------------------------------
# Workouts
# ---------------------------------------------------------------------------


class TestWorkoutFeed:
    @pytest.mark.asyncio
    async def test_creates_entry_with_calories(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        _seed_workout(stores)

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.WORKOUT_COMPLETED, [TEST_USER_ID], today=TEST_DATE
        )

        assert summary.created == 1
        entry = stores.alerts.feed[0]
        assert entry.action_type == "workout_completed"
        assert entry.source_id == "GARMIN_run-8842"
        assert entry.action_text == "Completed a 47 min workout and burned 534 kcal (Garmin)"
        assert entry.metadata["calories"] == 534

    @pytest.mark.asyncio
    async def test_creates_entry_without_calories(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        _seed_workout(stores, calories=None)

        await _synthesizer(stores, ingest_config).run(
            "workout_completed", [TEST_USER_ID], today=TEST_DATE
        )

        entry = stores.alerts.feed[0]
        assert entry.action_text == "Completed a 47 min workout (Garmin)"
        assert entry.metadata["calories"] is None

    @pytest.mark.asyncio
    async def test_second_run_creates_nothing(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        _seed_workout(stores)
        synthesizer = _synthesizer(stores, ingest_config)

        await synthesizer.run(AlertCategory.WORKOUT_COMPLETED, [TEST_USER_ID], today=TEST_DATE)
        second = await synthesizer.run(
            AlertCategory.WORKOUT_COMPLETED, [TEST_USER_ID], today=TEST_DATE
        )

        assert second.created == 0
        assert second.skipped == 1
        assert len(stores.alerts.feed) == 1

    @pytest.mark.asyncio
    async def test_old_workouts_outside_lookback_ignored(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        stores.metrics.add(
            make_row("Workout Duration", 30, external_id="WHOOP_old",
                     measurement_date=TEST_DATE - timedelta(days=10))
        )
        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.WORKOUT_COMPLETED, [TEST_USER_ID], today=TEST_DATE
        )
        assert summary.created == 0

    @pytest.mark.asyncio
    async def test_workouts_not_gated_by_preferences(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        stores.alerts.preferences[TEST_USER_ID] = NotificationPreferences(
            recipient_id=TEST_USER_ID, integration_issues=False, client_alerts=False
        )
        _seed_workout(stores)

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.WORKOUT_COMPLETED, [TEST_USER_ID], today=TEST_DATE
        )
        assert summary.created == 1

    def test_workout_text_rounds(self) -> None:
        row = make_row("Workout Duration", 44.6, source="WHOOP")
        assert workout_text(row, None) == "Completed a 45 min workout (Whoop)"


# ---------------------------------------------------------------------------
# Stale integrations
# ---------------------------------------------------------------------------


class TestStaleIntegrations:
    @pytest.mark.asyncio
    async def test_stale_provider_alerts_user_and_trainer(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        stores.tokens.tokens.append(make_token(Provider.OURA, "terra-oura", last_sync_at=_days_ago(9)))
        stores.alerts.trainers[TEST_USER_ID] = [TRAINER_ID]

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.INTEGRATION_STALE, today=TEST_DATE
        )

        assert summary.users_scanned == 1
        assert summary.created == 2
        assert {a.recipient_id for a in stores.alerts.alerts} == {TEST_USER_ID, TRAINER_ID}
        alert = stores.alerts.alerts[0]
        assert alert.alert_type == "integration_stale"
        assert "OURA has not synced in 9 days" in alert.message
        assert alert.alert_date == TEST_DATE

    @pytest.mark.asyncio
    async def test_never_synced_counts_as_stale(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        stores.tokens.tokens.append(make_token(Provider.WHOOP, "terra-w", last_sync_at=None))

        await _synthesizer(stores, ingest_config).run(
            AlertCategory.INTEGRATION_STALE, today=TEST_DATE
        )
        assert "WHOOP has never synced" in stores.alerts.alerts[0].message

    @pytest.mark.asyncio
    async def test_recent_sync_is_not_stale(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        stores.tokens.tokens.append(make_token(Provider.WHOOP, "terra-w", last_sync_at=_days_ago(2)))

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.INTEGRATION_STALE, today=TEST_DATE
        )
        assert summary.created == 0
        assert stores.alerts.alerts == []

    @pytest.mark.asyncio
    async def test_one_alert_lists_every_stale_provider(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        stores.tokens.tokens.extend([
            make_token(Provider.WHOOP, "terra-w", last_sync_at=_days_ago(8)),
            make_token(Provider.WITHINGS, "terra-wi", last_sync_at=_days_ago(30)),
        ])

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.INTEGRATION_STALE, today=TEST_DATE
        )

        assert summary.created == 1
        message = stores.alerts.alerts[0].message
        assert "WHOOP" in message and "WITHINGS" in message

    @pytest.mark.asyncio
    async def test_opted_out_recipient_skipped(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        stores.tokens.tokens.append(make_token(Provider.OURA, "terra-oura", last_sync_at=_days_ago(9)))
        stores.alerts.trainers[TEST_USER_ID] = [TRAINER_ID]
        stores.alerts.preferences[TRAINER_ID] = NotificationPreferences(
            recipient_id=TRAINER_ID, integration_issues=False
        )

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.INTEGRATION_STALE, today=TEST_DATE
        )

        assert summary.created == 1
        assert summary.skipped == 1
        assert [a.recipient_id for a in stores.alerts.alerts] == [TEST_USER_ID]


# ---------------------------------------------------------------------------
# Overtraining
# ---------------------------------------------------------------------------


class TestOvertraining:
    @pytest.mark.asyncio
    async def test_high_strain_low_recovery_alerts(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        _seed_overtraining(stores)

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.OVERTRAINING_RISK, [TEST_USER_ID], today=TEST_DATE
        )

        assert summary.created == 1
        alert = stores.alerts.alerts[0]
        assert alert.alert_type == "overtraining_risk"
        assert "strain 19.5" in alert.message
        assert "recovery 25%" in alert.message

    @pytest.mark.asyncio
    async def test_good_recovery_does_not_alert(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        _seed_overtraining(stores, strain=19.5, recovery=70)

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.OVERTRAINING_RISK, [TEST_USER_ID], today=TEST_DATE
        )
        assert summary.created == 0

    @pytest.mark.asyncio
    async def test_uses_resolved_values(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        """A low-precedence source reporting high strain does not trigger the alert."""
        day = TEST_DATE - timedelta(days=1)
        stores.metrics.add(
            make_row("Day Strain", 12.0, priority=1, measurement_date=day),
            make_row("strain", 20.0, source="GOOGLE", priority=4, measurement_date=day),
            make_row("Recovery Score", 25, priority=1, measurement_date=day),
        )

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.OVERTRAINING_RISK, [TEST_USER_ID], today=TEST_DATE
        )
        assert summary.created == 0

    @pytest.mark.asyncio
    async def test_client_alerts_preference_respected(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        _seed_overtraining(stores)
        stores.alerts.preferences[TEST_USER_ID] = NotificationPreferences(
            recipient_id=TEST_USER_ID, client_alerts=False
        )

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.OVERTRAINING_RISK, [TEST_USER_ID], today=TEST_DATE
        )
        assert summary.created == 0
        assert summary.skipped == 1

    def test_find_overtraining_day_picks_latest(self) -> None:
        d1, d2 = TEST_DATE - timedelta(days=2), TEST_DATE - timedelta(days=1)
        strain = [WidgetHistoryPoint(date=d1, value=19), WidgetHistoryPoint(date=d2, value=20)]
        recovery = [WidgetHistoryPoint(date=d1, value=20), WidgetHistoryPoint(date=d2, value=30)]
        assert find_overtraining_day(strain, recovery, 18.0, 33.0) == (d2, 20, 30)

    def test_thresholds_are_strict(self) -> None:
        strain = [WidgetHistoryPoint(date=TEST_DATE, value=18.0)]
        recovery = [WidgetHistoryPoint(date=TEST_DATE, value=10)]
        assert find_overtraining_day(strain, recovery, 18.0, 33.0) is None


# ---------------------------------------------------------------------------
# Idempotency, failures, publishing
# ---------------------------------------------------------------------------


class TestSynthesisRuns:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("category", list(AlertCategory))
    async def test_second_run_adds_nothing(
        self, stores: StoreBundle, ingest_config: IngestConfig, category: AlertCategory
    ) -> None:
        stores.tokens.tokens.append(make_token(Provider.OURA, "terra-oura", last_sync_at=_days_ago(9)))
        stores.alerts.trainers[TEST_USER_ID] = [TRAINER_ID]
        _seed_workout(stores)
        _seed_overtraining(stores)
        synthesizer = _synthesizer(stores, ingest_config)

        first = await synthesizer.run(category, today=TEST_DATE)
        before = len(stores.alerts.alerts) + len(stores.alerts.feed)
        second = await synthesizer.run(category, today=TEST_DATE)

        assert first.created > 0
        assert second.created == 0
        assert len(stores.alerts.alerts) + len(stores.alerts.feed) == before

    @pytest.mark.asyncio
    async def test_insert_failure_does_not_stop_fan_out(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        _seed_overtraining(stores)
        stores.alerts.trainers[TEST_USER_ID] = [TRAINER_ID]
        stores.alerts.failing_recipients.add(TEST_USER_ID)

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.OVERTRAINING_RISK, [TEST_USER_ID], today=TEST_DATE
        )

        assert summary.failed == 1
        assert summary.created == 1
        assert [a.recipient_id for a in stores.alerts.alerts] == [TRAINER_ID]
        assert summary.to_dict()["errors"]

    @pytest.mark.asyncio
    async def test_read_failure_for_one_recipient_does_not_stop_run(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        other_user = UUID("00000000-0000-4000-8000-000000000002")
        stores.tokens.tokens.extend([
            make_token(Provider.OURA, "terra-oura", last_sync_at=_days_ago(9)),
            make_token(Provider.WHOOP, "terra-whoop", user_id=other_user, last_sync_at=_days_ago(8)),
        ])
        stores.alerts.trainers[TEST_USER_ID] = [TRAINER_ID]
        stores.alerts.unreadable_recipients.add(TRAINER_ID)

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.INTEGRATION_STALE, today=TEST_DATE
        )

        assert summary.users_scanned == 2
        assert summary.failed == 1
        assert summary.created == 2
        assert "read timeout" in summary.errors[0]
        assert {a.recipient_id for a in stores.alerts.alerts} == {TEST_USER_ID, other_user}

    @pytest.mark.asyncio
    async def test_read_failure_for_one_user_does_not_stop_run(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        other_user = UUID("00000000-0000-4000-8000-000000000002")
        _seed_overtraining(stores)
        day = TEST_DATE - timedelta(days=1)
        stores.metrics.add(
            make_row("Day Strain", 20, priority=1, measurement_date=day, user_id=other_user),
            make_row("Recovery Score", 20, priority=1, measurement_date=day, user_id=other_user),
        )
        stores.metrics.unreadable_users.add(TEST_USER_ID)

        summary = await _synthesizer(stores, ingest_config).run(
            AlertCategory.OVERTRAINING_RISK, [TEST_USER_ID, other_user], today=TEST_DATE
        )

        assert summary.failed == 1
        assert summary.created == 1
        assert summary.errors[0].startswith(f"user {TEST_USER_ID}")
        assert [a.user_id for a in stores.alerts.alerts] == [other_user]

    @pytest.mark.asyncio
    async def test_created_records_are_published(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        registry = SubscriptionRegistry()
        alerts_sub = registry.subscribe(ALERTS_TABLE, {"recipient_id": TEST_USER_ID})
        feed_sub = registry.subscribe(FEED_TABLE, {"user_id": TEST_USER_ID})
        _seed_overtraining(stores)
        _seed_workout(stores)
        synthesizer = _synthesizer(stores, ingest_config, registry)

        await synthesizer.run(AlertCategory.OVERTRAINING_RISK, [TEST_USER_ID], today=TEST_DATE)
        await synthesizer.run(AlertCategory.WORKOUT_COMPLETED, [TEST_USER_ID], today=TEST_DATE)

        alert_record = alerts_sub.queue.get_nowait()
        assert alert_record["alert_type"] == "overtraining_risk"
        assert alert_record["recipient_id"] == str(TEST_USER_ID)
        feed_record = feed_sub.queue.get_nowait()
        assert feed_record["action_type"] == "workout_completed"

    @pytest.mark.asyncio
    async def test_unknown_category_rejected(
        self, stores: StoreBundle, ingest_config: IngestConfig
    ) -> None:
        with pytest.raises(ValueError):
            await _synthesizer(stores, ingest_config).run("birthday", today=TEST_DATE)
