from fastapi import APIRouter

from webpushrelay.api import relay

api_router = APIRouter()
api_router.include_router(relay.router, tags=["relay"])
