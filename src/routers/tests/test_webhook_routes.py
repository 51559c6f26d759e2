"""HTTP tests for the aggregator webhook receiver."""

from __future__ import annotations

import json

from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.dependencies import get_stores
from src.wearables.base import PersistenceError, Provider, StoreBundle
from src.wearables.signature import sign_payload
from src.wearables.tests.conftest import SIGNING_SECRET, load_payload, make_token
from src.wearables.tests.fakes import InMemoryMetricStore, in_memory_stores

URL = "/api/v1/webhooks/terra"


def _signed(payload: dict, secret: str = SIGNING_SECRET, separator: bytes = b".") -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    headers = {
        "terra-signature": sign_payload(body, secret, separator=separator),
        "Content-Type": "application/json",
    }
    return body, headers


class BrokenMetricStore(InMemoryMetricStore):
    async def record_webhook(self, *args, **kwargs) -> bool:
        raise PersistenceError("connection reset by peer")


class TestSignatureGate:
    def test_missing_signature_is_401(self, client: TestClient) -> None:
        response = client.post(URL, content=b'{"type": "healthcheck"}')
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert response.headers["access-control-allow-origin"] == "*"

    def test_wrong_secret_is_401(self, client: TestClient) -> None:
        body, headers = _signed({"type": "healthcheck"}, secret="someone-else")
        response = client.post(URL, content=body, headers=headers)
        assert response.status_code == 401

    def test_tampered_body_is_401(self, client: TestClient) -> None:
        body, headers = _signed({"type": "healthcheck"})
        response = client.post(URL, content=body.replace(b"health", b"wealth"), headers=headers)
        assert response.status_code == 401

    def test_legacy_header_name_accepted(self, client: TestClient) -> None:
        body, headers = _signed({"type": "healthcheck"}, separator=b"")
        headers["x-terra-signature"] = headers.pop("terra-signature")
        response = client.post(URL, content=body, headers=headers)
        assert response.status_code == 200


class TestDelivery:
    def test_healthcheck(self, client: TestClient) -> None:
        body, headers = _signed({"type": "healthcheck"})
        response = client.post(URL, content=body, headers=headers)
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_daily_delivery_stores_rows(self, client: TestClient, stores: StoreBundle) -> None:
        stores.tokens.tokens.append(make_token(Provider.WHOOP, "terra-whoop-001"))
        body, headers = _signed(load_payload("terra_daily.json"))

        response = client.post(URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["rowsInserted"] == 10
        assert len(stores.metrics.rows) == 10

    def test_invalid_json_is_400(self, client: TestClient) -> None:
        body = b"{not json"
        headers = {"terra-signature": sign_payload(body, SIGNING_SECRET)}
        response = client.post(URL, content=body, headers=headers)
        assert response.status_code == 400
        assert "error" in response.json()

    def test_processing_failure_is_500(self, app: FastAPI, client: TestClient) -> None:
        broken = in_memory_stores()
        broken.metrics = BrokenMetricStore()
        app.dependency_overrides[get_stores] = lambda: broken
        body, headers = _signed({"type": "healthcheck"})

        response = client.post(URL, content=body, headers=headers)

        assert response.status_code == 500
        assert response.json() == {"error": "connection reset by peer"}
        assert response.headers["access-control-allow-origin"] == "*"

    def test_resend_after_failure_is_processed(
        self, client: TestClient, stores: StoreBundle
    ) -> None:
        stores.tokens.tokens.append(make_token(Provider.WHOOP, "terra-whoop-001"))
        body, headers = _signed(load_payload("terra_daily.json"))
        stores.metrics.fail_inserts = True

        failed = client.post(URL, content=body, headers=headers)
        stores.metrics.fail_inserts = False
        resent = client.post(URL, content=body, headers=headers)

        assert failed.status_code == 500
        assert resent.status_code == 200
        assert "duplicate" not in resent.json()
        assert resent.json()["rowsInserted"] == 10
        assert len(stores.metrics.rows) == 10


class TestPreflightAndStatus:
    def test_options_returns_cors_headers(self, client: TestClient) -> None:
        response = client.options(URL)
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert "terra-signature" in response.headers["access-control-allow-headers"]
        assert response.content == b""

    def test_get_reports_live(self, client: TestClient) -> None:
        response = client.get(URL)
        assert response.status_code == 200
        assert response.json()["success"] is True
