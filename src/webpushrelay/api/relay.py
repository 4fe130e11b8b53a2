"""Relay endpoints: token check, server key upsert, push callback."""

from typing import TypeVar

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ValidationError

from webpushrelay.relay.models import (
    RelayResponse,
    ServerKeyRequest,
    TokenCheckRequest,
)
from webpushrelay.relay.pipeline import parse_callback_path

logger = structlog.get_logger()

router = APIRouter()

M = TypeVar("M", bound=BaseModel)


def _to_response(result: RelayResponse) -> PlainTextResponse:
    return PlainTextResponse(result.message, status_code=result.status)


async def _read_fields(request: Request) -> dict[str, str]:
    """Read a JSON object or a urlencoded/multipart form as a flat dict."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = await request.json()
        except ValueError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


async def _read_limited(request: Request, limit: int) -> bytes | None:
    """Read the body, or None as soon as it grows past ``limit``."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        return None
    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


def _validate(model: type[M], fields: dict[str, str]) -> M | RelayResponse:
    try:
        return model.model_validate(fields)
    except ValidationError as e:
        name = e.errors()[0]["loc"][0]
        return RelayResponse(422, f"missing parameter '{name}'")


@router.post("/webpushtokencheck")
async def token_check(request: Request) -> PlainTextResponse:
    """Register or confirm a device token digest for an install."""
    body = _validate(TokenCheckRequest, await _read_fields(request))
    if isinstance(body, RelayResponse):
        return _to_response(body)
    pipeline = request.app.state.pipeline
    return _to_response(
        await pipeline.check_token(body.token_digest, body.install_id)
    )


@router.post("/webpushserverkey")
async def server_key(request: Request) -> PlainTextResponse:
    """Register the VAPID public key used by a client application."""
    body = _validate(ServerKeyRequest, await _read_fields(request))
    if isinstance(body, RelayResponse):
        return _to_response(body)
    pipeline = request.app.state.pipeline
    return _to_response(
        await pipeline.update_server_key(body.client_id, body.server_key)
    )


@router.post("/webpushcallback/{rest:path}")
async def push_callback(rest: str, request: Request) -> PlainTextResponse:
    """Forward a push to the upstream service for one device."""
    # Split on the raw path so %2F stays inside its segment.
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1").split("?", 1)[0]
        raw_rest = path.removeprefix("/webpushcallback/")
    else:
        raw_rest = rest
    target = parse_callback_path(raw_rest)
    if target is None:
        return _to_response(RelayResponse(404, "not found"))

    limit = request.app.state.max_callback_body_bytes
    body = await _read_limited(request, limit)
    if body is None:
        logger.info("callback_body_too_large", limit=limit)
        return _to_response(RelayResponse(413, "request entity too large"))

    pipeline = request.app.state.pipeline
    return _to_response(
        await pipeline.handle_callback(
            target,
            authorization=request.headers.get("authorization"),
            crypto_key=request.headers.get("crypto-key"),
            body=body,
        )
    )
