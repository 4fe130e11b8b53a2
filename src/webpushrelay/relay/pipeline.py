"""Per-request orchestration and outcome-to-status mapping."""

import asyncio
from urllib.parse import unquote

import structlog

from webpushrelay.config import AuthMode
from webpushrelay.relay.db import StorageError
from webpushrelay.relay.gateway import DeliveryGateway
from webpushrelay.relay.keycodec import (
    DecodeError,
    decode_wire_base64,
    encode_wire_base64,
)
from webpushrelay.relay.models import (
    CallbackTarget,
    DeliveryOutcome,
    OutcomeKind,
    RejectReason,
    RelayResponse,
    TokenCheckResult,
    Verification,
)
from webpushrelay.relay.registry import ServerKeyRegistry, TokenRegistry
from webpushrelay.relay.vapid import VapidVerifier

logger = structlog.get_logger()

_DELIVERY_STATUS = {
    OutcomeKind.DELIVERED: 201,
    OutcomeKind.UNREGISTERED: 410,
    OutcomeKind.UPSTREAM_ERROR: 502,
    OutcomeKind.TRANSPORT_FAILURE: 503,
}

_REJECT_MESSAGE = {
    RejectReason.MISSING_HEADERS: "missing JWT signature.",
    RejectReason.MALFORMED_HEADER: "malformed signature headers.",
    RejectReason.KEY_MISMATCH: "server_key not match.",
    RejectReason.BAD_SIGNATURE: "JWT verify failed.",
    RejectReason.UNREGISTERED_CLIENT: "missing registered server_key.",
}

STORAGE_FAILURE = RelayResponse(500, "storage error")


def parse_callback_path(raw_path: str) -> CallbackTarget | None:
    """Split ``device_id/acct[/flags[/client_id]]`` into its parts.

    Segments are percent-decoded after splitting, so an encoded
    slash stays inside its segment. Returns None when the shape
    does not match.
    """
    parts = [unquote(p) for p in raw_path.strip("/").split("/")]
    if len(parts) < 2 or len(parts) > 4:
        return None
    if not parts[0] or not parts[1]:
        return None
    flags = parts[2] if len(parts) > 2 else None
    client_id = parts[3] if len(parts) > 3 and parts[3] else None
    return CallbackTarget(
        device_id=parts[0],
        acct=parts[1],
        flags=flags,
        client_id=client_id,
    )


def status_for_token_check(result: TokenCheckResult) -> RelayResponse:
    if result.accepted:
        return RelayResponse(200, result.value)
    return RelayResponse(403, "installId not match.")


def status_for_verification(verification: Verification) -> RelayResponse | None:
    """None when authenticated, else the rejection response.

    A failed signature check is 503: the request looked valid but
    verification itself could not complete. Everything else is 400.
    """
    if verification.reason is None:
        return None
    status = 503 if verification.reason is RejectReason.BAD_SIGNATURE else 400
    return RelayResponse(status, _REJECT_MESSAGE[verification.reason])


def status_for_delivery(outcome: DeliveryOutcome) -> RelayResponse:
    message = outcome.kind.value
    if outcome.detail:
        message = f"{message}: {outcome.detail}"
    return RelayResponse(_DELIVERY_STATUS[outcome.kind], message)


def delivery_data(target: CallbackTarget, body: bytes) -> dict[str, str]:
    """FCM data block: the account plus the opaque body, if any."""
    data = {"acct": target.acct}
    if body:
        data["payload"] = encode_wire_base64(body)
    return data


class RelayPipeline:
    """Handle the three relay operations end to end.

    Every method returns a RelayResponse; storage faults become
    500 here so callers never see StorageError.
    """

    def __init__(
        self,
        server_keys: ServerKeyRegistry,
        tokens: TokenRegistry,
        verifier: VapidVerifier,
        gateway: DeliveryGateway,
        auth_mode: AuthMode = AuthMode.OPTIONAL,
    ) -> None:
        self._server_keys = server_keys
        self._tokens = tokens
        self._verifier = verifier
        self._gateway = gateway
        self._auth_mode = auth_mode

    async def check_token(self, token_digest: str, install_id: str) -> RelayResponse:
        try:
            result = await asyncio.to_thread(
                self._tokens.check_or_register,
                token_digest,
                install_id,
            )
        except StorageError:
            logger.exception("token_check_storage_failed")
            return STORAGE_FAILURE
        logger.info(
            "token_check",
            token_digest=token_digest,
            install_id=install_id,
            result=result.value,
        )
        return status_for_token_check(result)

    async def update_server_key(self, client_id: str, server_key: str) -> RelayResponse:
        try:
            public_key = decode_wire_base64(server_key)
        except DecodeError:
            return RelayResponse(422, "invalid parameter 'server_key'")
        try:
            await asyncio.to_thread(self._server_keys.upsert, client_id, public_key)
        except StorageError:
            logger.exception("server_key_storage_failed", client_id=client_id)
            return STORAGE_FAILURE
        logger.info("server_key_updated", client_id=client_id)
        return RelayResponse(200, "ok")

    async def handle_callback(
        self,
        target: CallbackTarget,
        authorization: str | None,
        crypto_key: str | None,
        body: bytes,
    ) -> RelayResponse:
        logger.info(
            "callback",
            device_id=target.device_id,
            acct=target.acct,
            size=len(body),
        )
        try:
            rejection = await self._authenticate(target, authorization, crypto_key)
        except StorageError:
            logger.exception("server_key_lookup_failed", client_id=target.client_id)
            return STORAGE_FAILURE
        if rejection is not None:
            return rejection

        outcome = await self._gateway.deliver(
            target.device_id,
            delivery_data(target, body),
        )
        logger.info(
            "delivery_outcome",
            device_id=target.device_id,
            kind=outcome.kind.value,
            detail=outcome.detail,
        )
        return status_for_delivery(outcome)

    async def _authenticate(
        self,
        target: CallbackTarget,
        authorization: str | None,
        crypto_key: str | None,
    ) -> RelayResponse | None:
        record = None
        if target.client_id:
            record = await asyncio.to_thread(self._server_keys.lookup, target.client_id)

        if record is None:
            if self._auth_mode is AuthMode.REQUIRE:
                verification = Verification.rejected(
                    RejectReason.UNREGISTERED_CLIENT,
                    f"client_id={target.client_id!r}",
                )
                logger.warning(
                    "vapid_rejected",
                    reason=verification.reason.value,
                    detail=verification.detail,
                )
                return status_for_verification(verification)
            logger.info("vapid_skipped", client_id=target.client_id)
            return None

        verification = self._verifier.verify(
            authorization,
            crypto_key,
            record.public_key,
        )
        if not verification.authenticated:
            logger.warning(
                "vapid_rejected",
                client_id=target.client_id,
                reason=verification.reason.value,
                detail=verification.detail,
            )
        return status_for_verification(verification)
