"""Upstream delivery through the FCM legacy HTTP API."""

import asyncio
from typing import Any

import httpx
import structlog

from webpushrelay.relay.models import DeliveryOutcome

logger = structlog.get_logger()

NOT_REGISTERED = "NotRegistered"


class DeliveryGateway:
    """Send one notification per call and classify the reply.

    No retries happen here. The whole request, including a slow
    response body, is bounded by ``timeout_s``; expiry is reported
    as a transport failure.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        server_key: str,
        timeout_s: float = 10.0,
    ) -> None:
        self._client = client
        self._endpoint = endpoint
        self._server_key = server_key
        self._timeout_s = timeout_s

    async def deliver(
        self,
        device_address: str,
        data: dict[str, str],
    ) -> DeliveryOutcome:
        """Send ``data`` to one device and classify the result."""
        message = {
            "to": device_address,
            "priority": "high",
            "data": data,
        }
        try:
            async with asyncio.timeout(self._timeout_s):
                response = await self._client.post(
                    self._endpoint,
                    json=message,
                    headers={"Authorization": f"key={self._server_key}"},
                )
        except TimeoutError:
            return DeliveryOutcome.transport_failure(
                f"timeout: no reply within {self._timeout_s}s"
            )
        except httpx.TimeoutException as e:
            return DeliveryOutcome.transport_failure(f"timeout: {e}")
        except httpx.HTTPError as e:
            return DeliveryOutcome.transport_failure(f"{type(e).__name__}: {e}")

        body = _json_object(response)
        logger.debug(
            "fcm_response",
            status=response.status_code,
            body=body,
        )

        if not response.is_success:
            if body is None or not isinstance(body.get("results"), list):
                return DeliveryOutcome.transport_failure(
                    f"status {response.status_code}"
                )
        elif body is None:
            return DeliveryOutcome.upstream_error("InvalidResponse")

        return classify_response(body)


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _is_zero(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value == 0


def classify_response(body: dict[str, Any]) -> DeliveryOutcome:
    """Map an FCM send response for a single target to an outcome.

    The relay always addresses exactly one device, so exactly one
    entry in ``results`` is expected unless the counters already
    report a clean delivery.
    """
    if _is_zero(body.get("failure")) and _is_zero(body.get("canonical_ids")):
        return DeliveryOutcome.delivered()

    results = body.get("results")
    if not isinstance(results, list) or len(results) != 1:
        count = len(results) if isinstance(results, list) else None
        logger.error("fcm_unexpected_result_count", count=count)
        return DeliveryOutcome.upstream_error("UnexpectedResultCount")

    result = results[0]
    if not isinstance(result, dict):
        return DeliveryOutcome.upstream_error("InvalidResponse")

    if result.get("message_id") and result.get("registration_id"):
        # The device got a new registration id; this address is stale.
        return DeliveryOutcome.unregistered("canonical id replaced")
    error = result.get("error")
    if error == NOT_REGISTERED:
        return DeliveryOutcome.unregistered(NOT_REGISTERED)
    if error:
        logger.error("fcm_error_result", error=error)
        return DeliveryOutcome.upstream_error(str(error))
    if result.get("message_id"):
        return DeliveryOutcome.delivered()
    return DeliveryOutcome.upstream_error("InvalidResponse")
