import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import (
    BaseHTTPMiddleware,
)

from webpushrelay.api.router import api_router
from webpushrelay.config import Settings, get_settings
from webpushrelay.relay import (
    DeliveryGateway,
    RelayDatabase,
    RelayPipeline,
    ServerKeyRegistry,
    TokenRegistry,
    VapidVerifier,
)

logger = structlog.get_logger()

load_dotenv()


def build_pipeline(
    settings: Settings,
    db: RelayDatabase,
    client: httpx.AsyncClient,
) -> RelayPipeline:
    """Wire the relay components from explicit settings."""
    return RelayPipeline(
        server_keys=ServerKeyRegistry(db),
        tokens=TokenRegistry(db),
        verifier=VapidVerifier(audience=settings.vapid_audience),
        gateway=DeliveryGateway(
            client=client,
            endpoint=settings.fcm_endpoint,
            server_key=settings.fcm_server_key,
            timeout_s=settings.fcm_timeout_s,
        ),
        auth_mode=settings.auth_mode,
    )


@asynccontextmanager
async def lifespan(
    app: FastAPI,
) -> AsyncGenerator[None]:
    settings = get_settings()
    if not settings.fcm_server_key:
        msg = "missing FCM_SERVER_KEY in environment or .env"
        raise RuntimeError(msg)
    logger.info(
        "starting_up",
        version=settings.app_version,
        db_path=str(settings.db_path),
        auth_mode=settings.auth_mode.value,
    )

    db = RelayDatabase(settings.db_path)
    await asyncio.to_thread(db.open)
    client = httpx.AsyncClient(timeout=settings.fcm_timeout_s)
    app.state.pipeline = build_pipeline(settings, db, client)
    app.state.max_callback_body_bytes = settings.max_callback_body_bytes

    yield

    await client.aclose()
    db.close()
    logger.info("shutting_down")


class _AccessLogMiddleware(BaseHTTPMiddleware):
    """Log method, path and final status of every request."""

    async def dispatch(self, request, call_next):  # type: ignore[no-untyped-def]
        response = await call_next(request)
        logger.info(
            "request_handled",
            client=request.client.host if request.client else None,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
        )
        return response


async def _http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> PlainTextResponse:
    # Wrong method on a known path is reported like an unknown path.
    status = 404 if exc.status_code == 405 else exc.status_code
    message = "not found" if status == 404 else str(exc.detail)
    return PlainTextResponse(message, status_code=status)


async def _unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> PlainTextResponse:
    logger.exception(
        "unhandled_error",
        method=request.method,
        path=request.url.path,
    )
    return PlainTextResponse("internal server error", status_code=500)


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    settings = get_settings()
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    application.add_middleware(_AccessLogMiddleware)
    application.add_exception_handler(
        StarletteHTTPException,
        _http_exception_handler,  # type: ignore[arg-type]
    )
    application.add_exception_handler(Exception, _unhandled_exception_handler)
    application.include_router(api_router)
    return application


app = create_app()
