"""Representative aggregator payloads for the webhook test harness.

Shapes follow the aggregator's v2 webhook format closely enough to exercise
every field table in ``metric_normalizer``.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from uuid import UUID

from src.wearables.base import DataType, Provider


def _iso(day: date, at: time) -> str:
    return datetime.combine(day, at, tzinfo=timezone.utc).isoformat()


def _daily(day: date) -> dict[str, Any]:
    return {
        "metadata": {"start_time": _iso(day, time(0)), "end_time": _iso(day + timedelta(days=1), time(0))},
        "scores": {"recovery": 68, "activity": 62},
        "strain_data": {"strain_level": 12.4},
        "distance_data": {"steps": 9432},
        "calories_data": {"active_burned_calories": 612},
        "heart_rate_data": {
            "summary": {"resting_hr_bpm": 52, "max_hr_bpm": 171, "avg_hrv_rmssd": 64.2}
        },
        "oxygen_data": {"vo2max_ml_per_min_per_kg": 48.5},
    }


def _sleep(day: date) -> dict[str, Any]:
    return {
        "metadata": {
            "start_time": _iso(day - timedelta(days=1), time(22, 40)),
            "end_time": _iso(day, time(6, 55)),
        },
        "sleep_durations_data": {
            "asleep": {
                "duration_asleep_state_seconds": 27000,
                "duration_deep_sleep_state_seconds": 5400,
                "duration_REM_sleep_state_seconds": 6300,
                "duration_light_sleep_state_seconds": 15300,
            },
            "sleep_efficiency": 0.91,
        },
        "heart_rate_data": {"summary": {"avg_hrv_rmssd": 71.0}},
    }


def _activity(day: date) -> dict[str, Any]:
    return {
        "metadata": {
            "summary_id": f"harness-{day.isoformat()}",
            "name": "Running",
            "type": 1,
            "start_time": _iso(day, time(7, 0)),
            "end_time": _iso(day, time(7, 45)),
        },
        "active_durations_data": {"activity_seconds": 2700},
        "calories_data": {"total_burned_calories": 520},
        "strain_data": {"strain_level": 11.2},
    }


def _body(day: date) -> dict[str, Any]:
    return {
        "metadata": {"start_time": _iso(day, time(0)), "end_time": _iso(day, time(23, 59))},
        "measurements_data": {
            "measurements": [
                {
                    "measurement_time": _iso(day, time(7, 30)),
                    "weight_kg": 78.4,
                    "bodyfat_percentage": 17.9,
                    "muscle_mass_g": 35200,
                }
            ]
        },
    }


_BUILDERS = {
    DataType.DAILY: _daily,
    DataType.SLEEP: _sleep,
    DataType.ACTIVITY: _activity,
    DataType.BODY: _body,
}


def build_sample_payload(
    payload_type: DataType | str,
    provider: Provider | str,
    terra_user_id: str,
    reference_id: UUID | None = None,
    day: date | None = None,
) -> dict[str, Any]:
    """Build a one-item webhook payload of the given data type.

    Raises:
        ValueError: For unknown data types or providers.
    """
    data_type = DataType(payload_type)
    provider = Provider.parse(provider)
    day = day or date.today()
    return {
        "type": data_type.value,
        "user": {
            "user_id": terra_user_id,
            "provider": provider.value,
            "reference_id": str(reference_id) if reference_id else None,
        },
        "data": [_BUILDERS[data_type](day)],
    }
