"""Records and result values shared by the relay components."""

from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class ServerKeyRecord:
    """Registered VAPID public key for one client application."""

    client_id: str
    public_key: bytes


@dataclass(frozen=True)
class TokenCheckRecord:
    """Dedup entry for one device push token."""

    token_digest: str
    install_id: str
    created_at: float
    updated_at: float


class TokenCheckResult(StrEnum):
    """Outcome of a token check-or-register call."""

    REGISTERED = "registered"
    REFRESHED = "refreshed"
    IDENTITY_MISMATCH = "identity_mismatch"

    @property
    def accepted(self) -> bool:
        return self is not TokenCheckResult.IDENTITY_MISMATCH


class RejectReason(StrEnum):
    """Why a callback failed VAPID verification."""

    MISSING_HEADERS = "missing_headers"
    MALFORMED_HEADER = "malformed_header"
    KEY_MISMATCH = "key_mismatch"
    BAD_SIGNATURE = "bad_signature"
    UNREGISTERED_CLIENT = "unregistered_client"


@dataclass(frozen=True)
class Verification:
    """Result of checking a callback's Authorization/Crypto-Key pair.

    ``reason`` is None when the request is authenticated. ``detail``
    is meant for logs only and never carries key material.
    """

    reason: RejectReason | None = None
    detail: str = ""

    @property
    def authenticated(self) -> bool:
        return self.reason is None

    @classmethod
    def rejected(cls, reason: RejectReason, detail: str = "") -> "Verification":
        return cls(reason=reason, detail=detail)


AUTHENTICATED = Verification()


class OutcomeKind(StrEnum):
    """Classification of a single upstream delivery attempt."""

    DELIVERED = "delivered"
    UNREGISTERED = "unregistered"
    UPSTREAM_ERROR = "upstream_error"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass(frozen=True)
class DeliveryOutcome:
    """What happened to one notification sent upstream."""

    kind: OutcomeKind
    detail: str = ""

    @classmethod
    def delivered(cls) -> "DeliveryOutcome":
        return cls(OutcomeKind.DELIVERED)

    @classmethod
    def unregistered(cls, detail: str = "") -> "DeliveryOutcome":
        return cls(OutcomeKind.UNREGISTERED, detail)

    @classmethod
    def upstream_error(cls, code: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.UPSTREAM_ERROR, code)

    @classmethod
    def transport_failure(cls, detail: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.TRANSPORT_FAILURE, detail)


@dataclass(frozen=True)
class CallbackTarget:
    """Decoded segments of a /webpushcallback path."""

    device_id: str
    acct: str
    flags: str | None = None
    client_id: str | None = None


@dataclass(frozen=True)
class RelayResponse:
    """Final HTTP status and message for one inbound request."""

    status: int
    message: str = ""


class TokenCheckRequest(BaseModel):
    """Body of /webpushtokencheck."""

    token_digest: str = Field(min_length=1)
    install_id: str = Field(min_length=1)


class ServerKeyRequest(BaseModel):
    """Body of /webpushserverkey."""

    client_id: str = Field(min_length=1)
    server_key: str = Field(min_length=1, description="base64url raw EC point")
