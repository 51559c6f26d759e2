"""Map aggregator payloads (body, daily, activity, sleep) onto canonical metric rows.

Each data type has an explicit, static field table: canonical metric name →
ordered list of payload paths to try.  The first path present in an item
wins.  Unit conversions and scale changes happen here, at ingestion time, so
every stored row for a canonical metric is directly comparable:

    seconds  → hours      (sleep durations)
    grams    → kilograms  (muscle mass)
    fraction → percent    (sleep efficiency)
    0–100 activity score → 0–21 strain (value / 100 * 21), reduced confidence

A value that is missing is not an error.  A value that is present but not a
finite number, or negative for a non-negative metric, is skipped for that row
only and counted in the result.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable
from uuid import UUID

from pydantic import ValidationError

from src.models.metrics import RawMetricRow
from src.wearables.base import DataType, Provider
from src.wearables.config_loader import IngestConfig, get_ingest_config

logger = logging.getLogger("vitalink.wearables.normalizer")


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------


def seconds_to_hours(value: float) -> float:
    return round(value / 3600.0, 2)


def seconds_to_minutes(value: float) -> float:
    return round(value / 60.0, 1)


def grams_to_kg(value: float) -> float:
    return round(value / 1000.0, 2)


def fraction_to_percent(value: float) -> float:
    # some providers already report 0-100
    return round(value * 100.0, 1) if value <= 1.0 else round(value, 1)


def activity_score_to_strain(value: float) -> float:
    """Rescale a 0–100 activity score onto the native 0–21 strain scale."""
    return round(value / 100.0 * 21.0, 1)


# ---------------------------------------------------------------------------
# Static field tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldSource:
    """One payload location for a metric, with an optional conversion."""

    path: tuple[str, ...]
    transform: Callable[[float], float] | None = None
    rescaled: bool = False


@dataclass(frozen=True)
class FieldMapping:
    """Canonical metric and the payload locations that can supply it, in order."""

    metric: str
    sources: tuple[FieldSource, ...]
    external_suffix: str = ""


def _src(*path: str, transform=None, rescaled: bool = False) -> FieldSource:
    return FieldSource(path=tuple(path), transform=transform, rescaled=rescaled)


DAILY_FIELDS: tuple[FieldMapping, ...] = (
    FieldMapping("Recovery Score", (
        _src("scores", "recovery"),
        _src("stress_data", "recovery_level"),
    )),
    FieldMapping("Day Strain", (
        _src("strain_data", "strain_level"),
        _src("scores", "activity", transform=activity_score_to_strain, rescaled=True),
    )),
    FieldMapping("Steps", (
        _src("distance_data", "steps"),
    )),
    FieldMapping("Active Calories", (
        _src("calories_data", "active_burned_calories"),
    )),
    FieldMapping("Resting Heart Rate", (
        _src("heart_rate_data", "summary", "resting_hr_bpm"),
        _src("heart_rate_data", "summary", "hr_resting_bpm"),
    )),
    FieldMapping("Max Heart Rate", (
        _src("heart_rate_data", "summary", "max_hr_bpm"),
        _src("heart_rate_data", "summary", "hr_max_bpm"),
    )),
    FieldMapping("HRV RMSSD", (
        _src("heart_rate_data", "summary", "avg_hrv_rmssd"),
    )),
    FieldMapping("VO2Max", (
        _src("oxygen_data", "vo2max_ml_per_min_per_kg"),
    )),
)

SLEEP_FIELDS: tuple[FieldMapping, ...] = (
    FieldMapping("Sleep Duration", (
        _src("sleep_durations_data", "asleep", "duration_asleep_state_seconds",
             transform=seconds_to_hours),
    )),
    FieldMapping("Deep Sleep Duration", (
        _src("sleep_durations_data", "asleep", "duration_deep_sleep_state_seconds",
             transform=seconds_to_hours),
    )),
    FieldMapping("REM Sleep Duration", (
        _src("sleep_durations_data", "asleep", "duration_REM_sleep_state_seconds",
             transform=seconds_to_hours),
    )),
    FieldMapping("Light Sleep Duration", (
        _src("sleep_durations_data", "asleep", "duration_light_sleep_state_seconds",
             transform=seconds_to_hours),
    )),
    FieldMapping("Sleep Efficiency", (
        _src("sleep_durations_data", "sleep_efficiency", transform=fraction_to_percent),
    )),
    FieldMapping("HRV RMSSD", (
        _src("heart_rate_data", "summary", "avg_hrv_rmssd"),
    )),
)

# Activity rows share the session id; the suffixes identify companion metrics.
ACTIVITY_FIELDS: tuple[FieldMapping, ...] = (
    FieldMapping("Workout Duration", (
        _src("active_durations_data", "activity_seconds", transform=seconds_to_minutes),
    )),
    FieldMapping("Workout Calories", (
        _src("calories_data", "total_burned_calories"),
        _src("calories_data", "net_activity_calories"),
    ), external_suffix="_calories"),
    FieldMapping("Workout Strain", (
        _src("strain_data", "strain_level"),
    ), external_suffix="_strain"),
)

# Per-measurement body fields: (metric, key, transform, external id suffix)
BODY_MEASUREMENT_FIELDS: tuple[tuple[str, str, Callable[[float], float] | None, str], ...] = (
    ("Weight", "weight_kg", None, "weight"),
    ("Body Fat Percentage", "bodyfat_percentage", None, "bodyfat"),
    ("Muscle Mass", "muscle_mass_g", grams_to_kg, "muscle"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Skip(Exception):
    """A present value that cannot be stored."""


def dig(item: dict[str, Any], path: tuple[str, ...]) -> Any:
    """Follow ``path`` through nested dicts; None if any step is missing."""
    current: Any = item
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def coerce_number(value: Any) -> float:
    """Return ``value`` as a finite float.

    Raises:
        _Skip: For booleans, non-numeric strings and NaN/inf.
    """
    if isinstance(value, bool):
        raise _Skip(f"boolean is not a metric value: {value!r}")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise _Skip(f"non-numeric value {value!r}") from None
    else:
        raise _Skip(f"unsupported value type {type(value).__name__}")
    if math.isnan(number) or math.isinf(number):
        raise _Skip(f"non-finite value {value!r}")
    return number


def parse_day(value: Any) -> date | None:
    """Return the calendar day of an ISO date/datetime string (local to the payload)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _time_token(value: Any) -> str:
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[1][:8].replace(":", "")
    return "000000"


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


@dataclass
class NormalizationResult:
    """Rows produced from one payload, plus what had to be skipped."""

    rows: list[RawMetricRow] = field(default_factory=list)
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def skip(self, message: str) -> None:
        self.skipped += 1
        self.errors.append(message)


class MetricNormalizer:
    """Turn aggregator payload items into validated RawMetricRows for one user."""

    def __init__(self, config: IngestConfig | None = None) -> None:
        self._config = config or get_ingest_config()

    def normalize(
        self,
        payload_type: DataType | str,
        provider: Provider | str,
        user_id: UUID,
        items: list[dict[str, Any]],
    ) -> NormalizationResult:
        """Normalize every item of one webhook/backfill delivery.

        Unknown payload types produce an empty result.
        """
        result = NormalizationResult()
        try:
            data_type = DataType(payload_type)
        except ValueError:
            logger.info("No field table for payload type %r", payload_type)
            return result
        provider = Provider.parse(provider)

        for item in items or []:
            if not isinstance(item, dict):
                result.skip(f"{data_type.value}: item is not an object")
                continue
            if data_type is DataType.BODY:
                self._normalize_body(item, provider, user_id, result)
            elif data_type is DataType.ACTIVITY:
                self._normalize_activity(item, provider, user_id, result)
            elif data_type is DataType.SLEEP:
                self._normalize_summary(item, SLEEP_FIELDS, "sleep", provider, user_id, result)
            else:
                self._normalize_summary(item, DAILY_FIELDS, "daily", provider, user_id, result)

        if result.skipped:
            logger.info(
                "Normalized %s/%s for %s: %d rows, %d skipped",
                provider.value, data_type.value, user_id, len(result.rows), result.skipped,
            )
        return result

    # ------------------------------------------------------------------
    # Per data type
    # ------------------------------------------------------------------

    def _normalize_summary(
        self,
        item: dict[str, Any],
        fields: tuple[FieldMapping, ...],
        kind: str,
        provider: Provider,
        user_id: UUID,
        result: NormalizationResult,
    ) -> None:
        metadata = item.get("metadata") or {}
        if not isinstance(metadata, dict):
            result.skip(f"{kind}: item metadata is not an object")
            return
        # sleep belongs to the day the user woke up
        day_source = metadata.get("end_time") if kind == "sleep" else None
        measurement_date = parse_day(day_source) or parse_day(metadata.get("start_time"))
        if measurement_date is None:
            result.skip(f"{kind}: item has no usable metadata.start_time")
            return

        for mapping in fields:
            self._emit(
                mapping, item, provider, user_id, measurement_date,
                external_id=f"{provider.value}_{kind}_{measurement_date.isoformat()}",
                result=result,
            )

    def _normalize_activity(
        self,
        item: dict[str, Any],
        provider: Provider,
        user_id: UUID,
        result: NormalizationResult,
    ) -> None:
        metadata = item.get("metadata") or {}
        if not isinstance(metadata, dict):
            result.skip("activity: item metadata is not an object")
            return
        measurement_date = parse_day(metadata.get("start_time"))
        summary_id = metadata.get("summary_id")
        if measurement_date is None or not summary_id:
            result.skip("activity: item has no summary_id or start_time")
            return

        session_id = f"{provider.value}_{summary_id}"
        for mapping in ACTIVITY_FIELDS:
            self._emit(
                mapping, item, provider, user_id, measurement_date,
                external_id=session_id, result=result,
            )

        # fall back to wall-clock duration when the provider omits activity_seconds
        if not any(r.external_id == session_id for r in result.rows):
            start = metadata.get("start_time")
            end = metadata.get("end_time")
            try:
                seconds = (
                    datetime.fromisoformat(end) - datetime.fromisoformat(start)
                ).total_seconds()
            except (TypeError, ValueError):
                return
            if seconds > 0:
                self._append(
                    "Workout Duration", seconds_to_minutes(seconds), provider, user_id,
                    measurement_date, session_id, False, result,
                )

    def _normalize_body(
        self,
        item: dict[str, Any],
        provider: Provider,
        user_id: UUID,
        result: NormalizationResult,
    ) -> None:
        measurements = dig(item, ("measurements_data", "measurements")) or []
        if not isinstance(measurements, list):
            result.skip("body: measurements is not a list")
            return
        for measurement in measurements:
            if not isinstance(measurement, dict):
                result.skip("body: measurement is not an object")
                continue
            taken_at = measurement.get("measurement_time")
            measurement_date = parse_day(taken_at)
            if measurement_date is None:
                result.skip("body: measurement has no measurement_time")
                continue
            prefix = (
                f"terra_{provider.value.lower()}_{measurement_date.isoformat()}"
                f"_{_time_token(taken_at)}"
            )
            for metric, key, transform, suffix in BODY_MEASUREMENT_FIELDS:
                raw = measurement.get(key)
                if raw is None:
                    continue
                try:
                    value = coerce_number(raw)
                except _Skip as exc:
                    result.skip(f"{metric} on {measurement_date}: {exc}")
                    continue
                if transform is not None:
                    value = transform(value)
                self._append(
                    metric, value, provider, user_id, measurement_date,
                    f"{prefix}_{suffix}", False, result,
                )

    # ------------------------------------------------------------------
    # Row construction
    # ------------------------------------------------------------------

    def _emit(
        self,
        mapping: FieldMapping,
        item: dict[str, Any],
        provider: Provider,
        user_id: UUID,
        measurement_date: date,
        external_id: str,
        result: NormalizationResult,
    ) -> None:
        malformed: _Skip | None = None
        for source in mapping.sources:
            raw = dig(item, source.path)
            if raw is None:
                continue
            try:
                value = coerce_number(raw)
            except _Skip as exc:
                # keep looking; a later source may hold a usable value
                malformed = malformed or exc
                continue
            if source.transform is not None:
                value = source.transform(value)
            self._append(
                mapping.metric, value, provider, user_id, measurement_date,
                external_id + mapping.external_suffix, source.rescaled, result,
            )
            return
        if malformed is not None:
            result.skip(f"{mapping.metric} on {measurement_date}: {malformed}")

    def _append(
        self,
        metric: str,
        value: float,
        provider: Provider,
        user_id: UUID,
        measurement_date: date,
        external_id: str,
        rescaled: bool,
        result: NormalizationResult,
    ) -> None:
        config = self._config
        category = config.category_for(metric)
        definition = config.metrics.get(metric)
        if definition is not None and definition.non_negative and value < 0:
            result.skip(f"{metric} on {measurement_date}: negative value {value}")
            return
        try:
            row = RawMetricRow(
                user_id=user_id,
                metric_name=metric,
                value=value,
                unit=config.unit_for(metric),
                measurement_date=measurement_date,
                source=provider.value,
                priority=config.priority_for(category, provider.value),
                confidence_score=config.confidence_for(provider.value, rescaled=rescaled),
                category=category,
                external_id=external_id,
            )
        except ValidationError as exc:
            result.skip(f"{metric} on {measurement_date}: {exc.errors()[0]['msg']}")
            return
        result.rows.append(row)
