"""Deduplication keys for webhook ingestion.

The aggregator may deliver the same webhook more than once, out of order, and
historical redelivery overlaps with live data.  Dedup happens at two levels:

    terra_webhooks_raw: webhook_id              — UNIQUE, one row per delivery;
                        a failed delivery is claimed again on redelivery
    unified_metrics:    (user_id, metric_name, measurement_date, source, value)
                        — UNIQUE, exact redeliveries are ignored

Derived records (feed entries, alerts) use existence checks instead; see
src/wearables/alerts.py.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from src.models.metrics import RawMetricRow

# Payload types whose reference id identifies the connection rather than the data.
_CONNECTION_EVENTS = {"auth", "reauth", "deauth", "access_revoked", "user_reauth"}

METRIC_CONFLICT_COLUMNS = ["user_id", "metric_name", "measurement_date", "source", "value"]


def payload_content_hash(payload: dict) -> str:
    """Compute a content hash for detecting identical payloads.

    Returns:
        SHA-256 hex digest of the canonicalized JSON.
    """
    # Sort keys for deterministic serialization
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def webhook_idempotency_key(payload: dict[str, Any]) -> str:
    """Return the id under which a webhook delivery is recorded.

    Connection events combine type, reference, provider and aggregator user,
    since the same reference id is reused across reconnects.  Data deliveries
    use the aggregator's reference id when one is present and a content hash
    otherwise.
    """
    payload_type = str(payload.get("type") or "unknown")
    user = payload.get("user")
    if not isinstance(user, dict):
        user = {}
    reference = payload.get("reference_id") or user.get("reference_id")

    if payload_type in _CONNECTION_EVENTS:
        provider = user.get("provider") or payload.get("provider") or "unknown"
        terra_user_id = user.get("user_id") or "unknown"
        return f"{payload_type}_{reference or 'none'}_{provider}_{terra_user_id}"

    if reference and payload_type != "healthcheck":
        return f"{payload_type}_{reference}_{payload_content_hash(payload)[:16]}"
    return f"{payload_type}_{payload_content_hash(payload)}"


def metric_row_key(row: RawMetricRow) -> tuple:
    """Natural key of a raw metric row; matches METRIC_CONFLICT_COLUMNS."""
    return (row.user_id, row.metric_name, row.measurement_date, row.source, row.value)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    returning: str | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT query.

    On conflict, updates ``update_columns`` (default: every non-key column);
    with an empty update list the conflicting row is left untouched.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
    if returning:
        query += f" RETURNING {returning}"
    return query
