from webpushrelay.relay.db import RelayDatabase, StorageError
from webpushrelay.relay.gateway import DeliveryGateway
from webpushrelay.relay.pipeline import RelayPipeline
from webpushrelay.relay.registry import ServerKeyRegistry, TokenRegistry
from webpushrelay.relay.vapid import VapidVerifier

__all__ = [
    "DeliveryGateway",
    "RelayDatabase",
    "RelayPipeline",
    "ServerKeyRegistry",
    "StorageError",
    "TokenRegistry",
    "VapidVerifier",
]
