"""Tests for FCM delivery and response classification."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from webpushrelay.relay.gateway import DeliveryGateway, classify_response
from webpushrelay.relay.models import OutcomeKind

ENDPOINT = "https://fcm.example.com/fcm/send"


@pytest_asyncio.fixture
async def gateway(fcm):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fcm.handler))
    yield DeliveryGateway(client=client, endpoint=ENDPOINT, server_key="srv-key")
    await client.aclose()


def _reply(result: dict, failure: int = 1, canonical_ids: int = 0) -> dict:
    return {
        "multicast_id": 7,
        "success": 1 - failure,
        "failure": failure,
        "canonical_ids": canonical_ids,
        "results": [result],
    }


class TestRequest:
    @pytest.mark.asyncio
    async def test_sends_single_high_priority_message(self, gateway, fcm):
        outcome = await gateway.deliver("device-1", {"acct": "me@host"})

        assert outcome.kind is OutcomeKind.DELIVERED
        assert len(fcm.requests) == 1
        request = fcm.requests[0]
        assert str(request.url) == ENDPOINT
        assert request.headers["authorization"] == "key=srv-key"
        assert fcm.sent() == [
            {"to": "device-1", "priority": "high", "data": {"acct": "me@host"}}
        ]


class TestClassification:
    @pytest.mark.asyncio
    async def test_clean_counters_delivered(self, gateway, fcm):
        fcm.body = {"failure": 0, "canonical_ids": 0, "results": []}
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.DELIVERED

    @pytest.mark.asyncio
    async def test_not_registered(self, gateway, fcm):
        fcm.body = _reply({"error": "NotRegistered"})
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.UNREGISTERED

    @pytest.mark.asyncio
    async def test_canonical_id_replacement(self, gateway, fcm):
        fcm.body = _reply(
            {"message_id": "0:2", "registration_id": "new-token"},
            failure=0,
            canonical_ids=1,
        )
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.UNREGISTERED

    @pytest.mark.asyncio
    async def test_other_error_is_upstream_error(self, gateway, fcm):
        fcm.body = _reply({"error": "InvalidRegistration"})
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.UPSTREAM_ERROR
        assert outcome.detail == "InvalidRegistration"

    @pytest.mark.asyncio
    async def test_network_failure(self, gateway, fcm):
        fcm.error = httpx.ConnectError("connection refused")
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.TRANSPORT_FAILURE

    @pytest.mark.asyncio
    async def test_timeout(self, gateway, fcm):
        fcm.error = httpx.ReadTimeout("timed out")
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.TRANSPORT_FAILURE
        assert outcome.detail.startswith("timeout")

    @pytest.mark.asyncio
    async def test_non_2xx_plain_body(self, gateway, fcm):
        fcm.status = 401
        fcm.body = "Unauthorized"
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.TRANSPORT_FAILURE
        assert outcome.detail == "status 401"

    @pytest.mark.asyncio
    async def test_non_2xx_with_results_is_classified(self, gateway, fcm):
        fcm.status = 500
        fcm.body = _reply({"error": "Unavailable"})
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.UPSTREAM_ERROR
        assert outcome.detail == "Unavailable"

    @pytest.mark.asyncio
    async def test_2xx_without_json(self, gateway, fcm):
        fcm.body = "<html>oops</html>"
        outcome = await gateway.deliver("d", {})
        assert outcome.kind is OutcomeKind.UPSTREAM_ERROR
        assert outcome.detail == "InvalidResponse"


class TestSingleResult:
    def test_multiple_results_rejected(self):
        body = {
            "failure": 1,
            "canonical_ids": 0,
            "results": [{"error": "NotRegistered"}, {"message_id": "x"}],
        }
        outcome = classify_response(body)
        assert outcome.kind is OutcomeKind.UPSTREAM_ERROR
        assert outcome.detail == "UnexpectedResultCount"

    def test_missing_results_rejected(self):
        outcome = classify_response({"failure": 1, "canonical_ids": 0})
        assert outcome.detail == "UnexpectedResultCount"

    def test_message_id_without_error_delivered(self):
        outcome = classify_response(_reply({"message_id": "0:1"}, failure=0))
        assert outcome.kind is OutcomeKind.DELIVERED

    @pytest.mark.parametrize(
        "failure,canonical_ids",
        [(False, 0), (0, False), (0.0, 0), ("0", 0), (None, None)],
    )
    def test_non_integer_counters_not_delivered(self, failure, canonical_ids):
        body = {"failure": failure, "canonical_ids": canonical_ids, "results": []}
        outcome = classify_response(body)
        assert outcome.kind is OutcomeKind.UPSTREAM_ERROR


class TestTotalTimeout:
    @pytest.mark.asyncio
    async def test_slow_upstream_is_transport_failure(self):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"failure": 0, "canonical_ids": 0})

        async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
            gateway = DeliveryGateway(
                client=client,
                endpoint=ENDPOINT,
                server_key="srv-key",
                timeout_s=0.05,
            )
            outcome = await gateway.deliver("d", {})

        assert outcome.kind is OutcomeKind.TRANSPORT_FAILURE
        assert outcome.detail.startswith("timeout")
