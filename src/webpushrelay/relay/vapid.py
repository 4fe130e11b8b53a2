"""VAPID (draft WebPush scheme) request verification.

Callbacks carry ``Authorization: WebPush <jwt>`` and
``Crypto-Key: p256ecdsa=<base64url point>``. The asserted key must
equal the key registered for the client, and the JWT must be an
ES256 signature by that key.
"""

import hmac
import re
from dataclasses import dataclass

import jwt
from cryptography.hazmat.primitives.asymmetric import ec

from webpushrelay.relay.keycodec import (
    DecodeError,
    KeyEncodingError,
    decode_wire_base64,
    load_public_key,
)
from webpushrelay.relay.models import (
    AUTHENTICATED,
    RejectReason,
    Verification,
)

_AUTHORIZATION_RE = re.compile(r"^WebPush\s+(?P<token>\S+)")
_CRYPTO_KEY_RE = re.compile(r"p256ecdsa=(?P<key>[^;\s]+)")

# Only ES256 is accepted; the token header never picks the algorithm.
_ALGORITHMS = ["ES256"]


@dataclass(frozen=True)
class WebPushAuthorization:
    """Signed token taken from the Authorization header."""

    token: str


@dataclass(frozen=True)
class CryptoKeyAssertion:
    """Base64url signing key taken from the Crypto-Key header."""

    p256ecdsa: str


def parse_authorization(header: str) -> WebPushAuthorization | None:
    m = _AUTHORIZATION_RE.match(header)
    if not m:
        return None
    return WebPushAuthorization(token=m.group("token"))


def parse_crypto_key(header: str) -> CryptoKeyAssertion | None:
    m = _CRYPTO_KEY_RE.search(header)
    if not m:
        return None
    return CryptoKeyAssertion(p256ecdsa=m.group("key"))


class VapidVerifier:
    """Check a callback's signature against a registered key.

    Args:
        audience: When set, the token's ``aud`` claim must match
            it. When None, ``aud`` is not checked.
    """

    def __init__(self, audience: str | None = None) -> None:
        self._audience = audience

    def verify(
        self,
        authorization: str | None,
        crypto_key: str | None,
        registered_key: bytes,
    ) -> Verification:
        """Return AUTHENTICATED or a rejection with its reason."""
        if not authorization or not crypto_key:
            return Verification.rejected(RejectReason.MISSING_HEADERS)

        auth = parse_authorization(authorization)
        if auth is None:
            return Verification.rejected(
                RejectReason.MALFORMED_HEADER,
                "Authorization is not 'WebPush <token>'",
            )
        asserted = parse_crypto_key(crypto_key)
        if asserted is None:
            return Verification.rejected(
                RejectReason.MALFORMED_HEADER,
                "Crypto-Key has no p256ecdsa value",
            )

        try:
            public_key = decode_wire_base64(asserted.p256ecdsa)
        except DecodeError:
            return Verification.rejected(
                RejectReason.MALFORMED_HEADER,
                "p256ecdsa is not base64url",
            )

        if not hmac.compare_digest(public_key, registered_key):
            return Verification.rejected(RejectReason.KEY_MISMATCH)

        try:
            key = load_public_key(public_key)
        except KeyEncodingError as e:
            return Verification.rejected(RejectReason.BAD_SIGNATURE, str(e))

        return self._check_token(auth.token, key)

    def _check_token(
        self,
        token: str,
        key: ec.EllipticCurvePublicKey,
    ) -> Verification:
        options = {"verify_aud": self._audience is not None}
        try:
            jwt.decode(
                token,
                key=key,
                algorithms=_ALGORITHMS,
                audience=self._audience,
                options=options,
            )
        except jwt.PyJWTError as e:
            return Verification.rejected(
                RejectReason.BAD_SIGNATURE,
                f"{type(e).__name__}: {e}",
            )
        return AUTHENTICATED
