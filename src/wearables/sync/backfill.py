"""Historical range requests for Vitalink wearable data.

Asks the aggregator to redeliver a bounded date range of data for each
connected user.  The data itself arrives later through the webhook path, so
this module only issues requests and reports on them.  Designed to:
- Serialize outbound calls, with a short delay between requests and a longer
  one between users, to stay inside the aggregator's rate limit
- Treat each (user, data type) request independently; partial failure is
  recorded in the summary and never aborts the batch
- Touch each user's last-sync timestamp once all of their data types have
  been attempted

Usage::

    requester = HistoricalRangeRequester(client, token_store)
    summary = await requester.request_history(Provider.WHOOP, tokens, days_back=30)
    logger.info("Backfill: %d/%d users ok", summary.successful, summary.total)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

from src.wearables.base import PersistenceError, Provider, ProviderToken, TokenStore
from src.wearables.config_loader import IngestConfig, get_ingest_config
from src.wearables.terra_client import ProviderRequestError, TerraClient

logger = logging.getLogger("vitalink.wearables.sync.backfill")


@dataclass
class UserBackfillError:
    """Failures recorded for one user during a range request run.

    Attributes:
        user_id:       Internal Vitalink user UUID.
        terra_user_id: Aggregator-side user id the requests were sent for.
        errors:        One message per failed data type.
    """

    user_id: UUID
    terra_user_id: str | None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": str(self.user_id),
            "terraUserId": self.terra_user_id,
            "errors": list(self.errors),
        }


@dataclass
class BackfillSummary:
    """Outcome of one range request run for one provider.

    Attributes:
        provider:      Provider the requests were sent for.
        start_date:    First day requested.
        end_date:      Last day requested (today).
        total:         Users attempted.
        successful:    Users whose every data type was requested without error.
        failed:        Users with at least one failed request.
        requests_sent: Outbound calls made, successful or not.
        errors:        Per-user failure details.
    """

    provider: str
    start_date: date
    end_date: date
    total: int = 0
    successful: int = 0
    failed: int = 0
    requests_sent: int = 0
    errors: list[UserBackfillError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "requestsSent": self.requests_sent,
            "errors": [e.to_dict() for e in self.errors],
        }


class HistoricalRangeRequester:
    """Request historical redelivery for many users, one call at a time.

    Args:
        client:      Aggregator REST client.
        token_store: Used to touch last-sync timestamps.
        config:      Ingest config (max window, delays, data types per provider).
        sleep:       Awaitable sleep; tests inject a recorder.
    """

    def __init__(
        self,
        client: TerraClient,
        token_store: TokenStore,
        config: IngestConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._tokens = token_store
        self._config = config or get_ingest_config()
        self._sleep = sleep

    def date_range(self, days_back: int, today: date | None = None) -> tuple[date, date]:
        """Return (start, end) for a request of ``days_back`` days, capped at the max window.

        Raises:
            ValueError: If ``days_back`` is negative.
        """
        if days_back < 0:
            raise ValueError(f"days_back must be >= 0, got {days_back}")
        max_days = self._config.backfill.max_days
        if days_back > max_days:
            logger.info("Capping backfill window from %d to %d days", days_back, max_days)
            days_back = max_days
        end = today or date.today()
        return end - timedelta(days=days_back), end

    async def request_history(
        self,
        provider: Provider | str,
        users: list[ProviderToken],
        days_back: int,
        today: date | None = None,
    ) -> BackfillSummary:
        """Request redelivery of every relevant data type for every user.

        Never raises for upstream failures; they are reported in the summary.

        Raises:
            ValueError: If ``days_back`` is negative or the provider is unknown.
        """
        provider = Provider.parse(provider)
        start, end = self.date_range(days_back, today)
        data_types = self._config.data_types_for(provider.value)
        request_delay_s = self._config.backfill.request_delay_ms / 1000.0
        user_delay_s = self._config.backfill.user_delay_ms / 1000.0

        summary = BackfillSummary(provider=provider.value, start_date=start, end_date=end)
        logger.info(
            "Requesting %s history %s..%s for %d user(s): %s",
            provider.value, start, end, len(users), ", ".join(data_types),
        )

        for index, token in enumerate(users):
            if index > 0:
                await self._sleep(user_delay_s)
            summary.total += 1

            if not token.terra_user_id:
                summary.failed += 1
                summary.errors.append(
                    UserBackfillError(token.user_id, None, ["no aggregator user id on token"])
                )
                logger.warning("Skipping %s/%s: token has no aggregator user id",
                               token.user_id, provider.value)
                continue

            user_errors: list[str] = []
            for type_index, data_type in enumerate(data_types):
                if type_index > 0:
                    await self._sleep(request_delay_s)
                summary.requests_sent += 1
                try:
                    await self._client.request_history(
                        data_type, token.terra_user_id, start, end, to_webhook=True
                    )
                except ProviderRequestError as exc:
                    user_errors.append(f"{data_type}: {exc}")
                    logger.warning(
                        "History request failed for %s/%s (%s): %s",
                        token.user_id, provider.value, data_type, exc,
                    )

            if user_errors:
                summary.failed += 1
                summary.errors.append(
                    UserBackfillError(token.user_id, token.terra_user_id, user_errors)
                )
            else:
                summary.successful += 1

            await self._touch(token, provider)

        logger.info(
            "%s history requests done: %d ok, %d failed of %d user(s)",
            provider.value, summary.successful, summary.failed, summary.total,
        )
        return summary

    async def request_for_active_tokens(
        self,
        days_back: int,
        provider: Provider | str | None = None,
        user_id: UUID | None = None,
        today: date | None = None,
    ) -> list[BackfillSummary]:
        """Run ``request_history`` for every active token, grouped by provider."""
        wanted = Provider.parse(provider) if provider else None
        tokens = await self._tokens.get_active_tokens(provider=wanted, user_id=user_id)

        by_provider: dict[Provider, list[ProviderToken]] = {}
        for token in tokens:
            by_provider.setdefault(token.provider, []).append(token)

        summaries: list[BackfillSummary] = []
        for prov in sorted(by_provider, key=lambda p: p.value):
            summaries.append(
                await self.request_history(prov, by_provider[prov], days_back, today)
            )
        return summaries

    async def _touch(self, token: ProviderToken, provider: Provider) -> None:
        try:
            await self._tokens.touch_last_sync(
                token.user_id, provider, datetime.now(timezone.utc)
            )
        except PersistenceError:
            logger.exception("Failed to update last sync for %s/%s", token.user_id, provider.value)
