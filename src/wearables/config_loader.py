"""Load, validate, and hot-reload the Vitalink ingestion configuration.

The config lives in ``ingest_config.yaml`` alongside this module.  It holds
the static alias table (canonical metric -> provider-native names), the
provider precedence table used by conflict resolution, historical backfill
limits and alert thresholds.  It is loaded once at startup and cached; call
``reload_ingest_config()`` to re-read from disk without a restart.

Usage::

    from src.wearables.config_loader import get_ingest_config

    config = get_ingest_config()
    config.alias_set("Recovery Score")        # {"Recovery Score", "recovery_score", ...}
    config.priority_for("recovery", "WHOOP")  # 1
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("vitalink.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "ingest_config.yaml"

_VALID_DATA_TYPES = {"body", "daily", "activity", "sleep"}


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class MetricDefinition:
    """One canonical metric and the provider-native names that map onto it."""

    name: str
    category: str
    unit: str
    aliases: list[str]
    non_negative: bool = True


@dataclass
class BackfillConfig:
    """Historical range request settings."""

    max_days: int
    default_days_back: int
    scheduled_days_back: int
    request_delay_ms: int
    user_delay_ms: int
    request_timeout_seconds: float
    data_types: dict[str, list[str]]


@dataclass
class AlertConfig:
    """Thresholds for the alert synthesizer."""

    strain_threshold: float
    recovery_threshold: float
    overtraining_window_days: int
    stale_after_days: int
    workout_lookback_days: int
    calories_suffix: str


@dataclass
class WebhookRetryConfig:
    """Reprocessing of deliveries whose processing failed."""

    max_attempts: int
    batch_size: int


@dataclass
class IngestConfig:
    """Complete, validated ingestion configuration.

    Attributes:
        version:              Config schema version string.
        metrics:              Canonical metric name -> definition.
        provider_priority:    category -> provider -> priority (lower wins).
        default_priority:     Priority for providers absent from a category.
        provider_confidence:  provider -> baseline confidence (0-100).
        default_confidence:   Confidence for unknown providers.
        rescaled_confidence_penalty: Confidence subtracted from rescaled values.
        history_window_days:  Default widget history window.
        backfill:             Historical range request settings.
        alerts:               Alert synthesizer thresholds.
        webhook_retry:        Failed-delivery reprocessing limits.
    """

    version: str
    metrics: dict[str, MetricDefinition]
    provider_priority: dict[str, dict[str, int]]
    default_priority: int
    provider_confidence: dict[str, int]
    default_confidence: int
    rescaled_confidence_penalty: int
    history_window_days: int
    backfill: BackfillConfig
    alerts: AlertConfig
    webhook_retry: WebhookRetryConfig = field(
        default_factory=lambda: WebhookRetryConfig(max_attempts=5, batch_size=10)
    )
    _raw: dict = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    def alias_set(self, name: str) -> set[str]:
        """Return every stored name that counts as ``name``.

        Accepts either a canonical name or one of its aliases.  Unknown names
        map only to themselves.
        """
        canonical = self.canonical_for(name) or name
        definition = self.metrics.get(canonical)
        if definition is None:
            return {name}
        return {definition.name, *definition.aliases}

    def canonical_for(self, name: str) -> str | None:
        """Return the canonical metric a stored name belongs to, if any."""
        if name in self.metrics:
            return name
        for definition in self.metrics.values():
            if name in definition.aliases:
                return definition.name
        return None

    def category_for(self, metric_name: str) -> str:
        canonical = self.canonical_for(metric_name)
        if canonical is None:
            return "other"
        return self.metrics[canonical].category

    def unit_for(self, metric_name: str) -> str:
        canonical = self.canonical_for(metric_name)
        if canonical is None:
            return ""
        return self.metrics[canonical].unit

    def priority_for(self, category: str, provider: str) -> int:
        """Return the precedence of ``provider`` within ``category`` (lower wins)."""
        return self.provider_priority.get(category, {}).get(
            provider.upper(), self.default_priority
        )

    def confidence_for(self, provider: str, rescaled: bool = False) -> int:
        """Return the baseline confidence for a provider observation."""
        base = self.provider_confidence.get(provider.upper(), self.default_confidence)
        if rescaled:
            base -= self.rescaled_confidence_penalty
        return max(0, min(100, base))

    def data_types_for(self, provider: str) -> list[str]:
        """Return the aggregator data types requested during a provider backfill."""
        return list(
            self.backfill.data_types.get(
                provider.upper(), ["body", "daily", "activity", "sleep"]
            )
        )


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when ingest_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Ingest config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def find_alias_conflicts(metrics: dict[str, MetricDefinition]) -> list[str]:
    """Return a message for every stored name claimed by more than one metric.

    A name conflicts when it is an alias of two canonical metrics, or when it
    is one metric's canonical name and another metric's alias.
    """
    owners: dict[str, str] = {}
    conflicts: list[str] = []
    for definition in metrics.values():
        for name in (definition.name, *definition.aliases):
            owner = owners.get(name)
            if owner is not None and owner != definition.name:
                conflicts.append(
                    f"'{name}' is claimed by both '{owner}' and '{definition.name}'"
                )
            else:
                owners[name] = definition.name
    return conflicts


def _int(value: Any, path: str, errors: list[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        errors.append(f"{path} must be an integer, got {value!r}")
        return default


def _float(value: Any, path: str, errors: list[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        errors.append(f"{path} must be a number, got {value!r}")
        return default


def _validate_and_build(raw: dict) -> IngestConfig:
    """Validate the raw YAML dict and construct an IngestConfig.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If required sections are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Metrics and aliases ──
    metrics_raw = raw.get("metrics") or {}
    if not metrics_raw:
        errors.append("'metrics' section is missing or empty")

    metrics: dict[str, MetricDefinition] = {}
    for name, cfg in metrics_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"metrics.{name} must be a mapping")
            continue
        aliases = cfg.get("aliases") or []
        if not isinstance(aliases, list) or not all(isinstance(a, str) for a in aliases):
            errors.append(f"metrics.{name}.aliases must be a list of strings")
            aliases = []
        if "category" not in cfg:
            errors.append(f"Missing required key 'category' in section 'metrics.{name}'")
        metrics[name] = MetricDefinition(
            name=name,
            category=str(cfg.get("category", "other")),
            unit=str(cfg.get("unit", "")),
            aliases=[a for a in aliases if a != name],
            non_negative=bool(cfg.get("non_negative", True)),
        )

    errors.extend(
        f"metrics alias conflict: {c}" for c in find_alias_conflicts(metrics)
    )

    # ── Provider priority ──
    priority_raw = raw.get("provider_priority") or {}
    provider_priority: dict[str, dict[str, int]] = {}
    for category, providers in priority_raw.items():
        if not isinstance(providers, dict):
            errors.append(f"provider_priority.{category} must be a mapping of provider→priority")
            continue
        provider_priority[category] = {}
        for provider, prio in providers.items():
            p = _int(prio, f"provider_priority.{category}.{provider}", errors, 5)
            if p < 0:
                errors.append(f"provider_priority.{category}.{provider} = {p} must be >= 0")
            provider_priority[category][str(provider).upper()] = p
    default_priority = _int(raw.get("default_priority"), "default_priority", errors, 5)

    # ── Provider confidence ──
    confidence_raw = raw.get("provider_confidence") or {}
    provider_confidence: dict[str, int] = {}
    for provider, conf in confidence_raw.items():
        c = _int(conf, f"provider_confidence.{provider}", errors, 50)
        if not (0 <= c <= 100):
            errors.append(f"provider_confidence.{provider} = {c} is out of range [0, 100]")
        provider_confidence[str(provider).upper()] = c
    default_confidence = _int(raw.get("default_confidence"), "default_confidence", errors, 50)
    penalty = _int(
        raw.get("rescaled_confidence_penalty"), "rescaled_confidence_penalty", errors, 25
    )

    history_window_days = _int(
        (raw.get("history") or {}).get("window_days"), "history.window_days", errors, 7
    )

    # ── Backfill ──
    bf_raw = raw.get("backfill") or {}
    data_types: dict[str, list[str]] = {}
    for provider, types in (bf_raw.get("data_types") or {}).items():
        bad = [t for t in (types or []) if t not in _VALID_DATA_TYPES]
        if bad:
            errors.append(f"backfill.data_types.{provider} has unknown data types {bad}")
        data_types[str(provider).upper()] = [t for t in (types or []) if t in _VALID_DATA_TYPES]
    backfill = BackfillConfig(
        max_days=_int(bf_raw.get("max_days"), "backfill.max_days", errors, 90),
        default_days_back=_int(bf_raw.get("default_days_back"), "backfill.default_days_back", errors, 30),
        scheduled_days_back=_int(bf_raw.get("scheduled_days_back"), "backfill.scheduled_days_back", errors, 2),
        request_delay_ms=_int(bf_raw.get("request_delay_ms"), "backfill.request_delay_ms", errors, 500),
        user_delay_ms=_int(bf_raw.get("user_delay_ms"), "backfill.user_delay_ms", errors, 2000),
        request_timeout_seconds=_float(
            bf_raw.get("request_timeout_seconds"), "backfill.request_timeout_seconds", errors, 15.0
        ),
        data_types=data_types,
    )
    if backfill.max_days <= 0:
        errors.append(f"backfill.max_days = {backfill.max_days} must be positive")

    # ── Alerts ──
    al_raw = raw.get("alerts") or {}
    alerts = AlertConfig(
        strain_threshold=_float(al_raw.get("strain_threshold"), "alerts.strain_threshold", errors, 18.0),
        recovery_threshold=_float(al_raw.get("recovery_threshold"), "alerts.recovery_threshold", errors, 33.0),
        overtraining_window_days=_int(
            al_raw.get("overtraining_window_days"), "alerts.overtraining_window_days", errors, 3
        ),
        stale_after_days=_int(al_raw.get("stale_after_days"), "alerts.stale_after_days", errors, 7),
        workout_lookback_days=_int(
            al_raw.get("workout_lookback_days"), "alerts.workout_lookback_days", errors, 2
        ),
        calories_suffix=str(al_raw.get("calories_suffix", "_calories")),
    )

    # ── Webhook retry ──
    wr_raw = raw.get("webhook_retry") or {}
    webhook_retry = WebhookRetryConfig(
        max_attempts=_int(wr_raw.get("max_attempts"), "webhook_retry.max_attempts", errors, 5),
        batch_size=_int(wr_raw.get("batch_size"), "webhook_retry.batch_size", errors, 10),
    )
    if webhook_retry.max_attempts < 1:
        errors.append(
            f"webhook_retry.max_attempts = {webhook_retry.max_attempts} must be at least 1"
        )

    if errors:
        raise ConfigValidationError(
            f"ingest_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return IngestConfig(
        version=version,
        metrics=metrics,
        provider_priority=provider_priority,
        default_priority=default_priority,
        provider_confidence=provider_confidence,
        default_confidence=default_confidence,
        rescaled_confidence_penalty=penalty,
        history_window_days=history_window_days,
        backfill=backfill,
        alerts=alerts,
        webhook_retry=webhook_retry,
        _raw=raw,
    )


def load_ingest_config(path: Path | None = None) -> IngestConfig:
    """Load and validate the ingest config from disk.

    Args:
        path: Override path to YAML. Uses the bundled ingest_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded ingest config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: IngestConfig | None = None
_config_lock = threading.Lock()


def get_ingest_config() -> IngestConfig:
    """Return the global IngestConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_ingest_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_ingest_config()
    return _config


def reload_ingest_config(path: Path | None = None) -> IngestConfig:
    """Reload the ingest config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_ingest_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded ingest config: %s → %s", old_version, new_config.version)
    return new_config
