"""Shared fixtures and aggregator payloads for wearable ingestion tests."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest

from src.models.metrics import RawMetricRow
from src.wearables.base import Provider, ProviderToken, StoreBundle
from src.wearables.config_loader import IngestConfig, load_ingest_config
from src.wearables.tests.fakes import in_memory_stores

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
TRAINER_ID = UUID("87654321-4321-8765-4321-876543210987")
TEST_DATE = date(2026, 2, 23)
SIGNING_SECRET = "whsec_test_secret"


def load_payload(name: str) -> dict[str, Any]:
    return json.loads((FIXTURES_DIR / name).read_text())


def make_row(
    metric_name: str,
    value: float,
    source: str = "WHOOP",
    measurement_date: date = TEST_DATE,
    priority: int = 5,
    confidence_score: int = 50,
    created_at: datetime | None = None,
    external_id: str | None = None,
    user_id: UUID = TEST_USER_ID,
) -> RawMetricRow:
    return RawMetricRow(
        user_id=user_id,
        metric_name=metric_name,
        value=value,
        measurement_date=measurement_date,
        source=source,
        priority=priority,
        confidence_score=confidence_score,
        created_at=created_at,
        external_id=external_id,
    )


def make_token(
    provider: Provider = Provider.WHOOP,
    terra_user_id: str | None = "terra-whoop-001",
    user_id: UUID = TEST_USER_ID,
    last_sync_at: datetime | None = None,
) -> ProviderToken:
    return ProviderToken(
        user_id=user_id,
        provider=provider,
        terra_user_id=terra_user_id,
        last_sync_at=last_sync_at,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ingest_config() -> IngestConfig:
    """Load the real ingest config for tests."""
    return load_ingest_config()


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> StoreBundle:
    """Empty in-memory stores."""
    return in_memory_stores()


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def daily_payload() -> dict:
    return load_payload("terra_daily.json")


@pytest.fixture
def sleep_payload() -> dict:
    return load_payload("terra_sleep.json")


@pytest.fixture
def activity_payload() -> dict:
    return load_payload("terra_activity.json")


@pytest.fixture
def body_payload() -> dict:
    return load_payload("terra_body.json")
