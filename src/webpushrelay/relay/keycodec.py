"""Wire decoding and public-key encoding for VAPID keys.

Callers send P-256 public keys as raw uncompressed points
(0x04 || X || Y, 65 bytes) in base64url. Signature libraries
want a SubjectPublicKeyInfo (RFC 5480), so the point is loaded
onto the curve and re-serialized in that form.
"""

import base64
import binascii

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

UNCOMPRESSED_POINT_MARKER = 0x04
P256_POINT_LEN = 65


class DecodeError(ValueError):
    """Raised when a wire value is not valid base64/base64url."""


class KeyEncodingError(ValueError):
    """Raised when bytes are not an uncompressed P-256 point."""


def decode_wire_base64(value: str) -> bytes:
    """Decode base64url (or standard base64), padding optional."""
    if not isinstance(value, str):
        msg = f"expected str, got {type(value).__name__}"
        raise DecodeError(msg)
    s = value.strip().rstrip("=").replace("-", "+").replace("_", "/")
    if not s:
        raise DecodeError("empty value")
    s += "=" * (-len(s) % 4)
    try:
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError) as e:
        msg = f"invalid base64: {e}"
        raise DecodeError(msg) from e


def encode_wire_base64(raw: bytes) -> str:
    """Encode bytes as unpadded base64url."""
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def load_public_key(raw_point: bytes) -> ec.EllipticCurvePublicKey:
    """Load a raw uncompressed point as a P-256 public key.

    Compressed points and points that are not on the curve are
    rejected with KeyEncodingError.
    """
    if len(raw_point) != P256_POINT_LEN:
        msg = f"expected {P256_POINT_LEN}-byte point, got {len(raw_point)}"
        raise KeyEncodingError(msg)
    if raw_point[0] != UNCOMPRESSED_POINT_MARKER:
        msg = f"point marker is 0x{raw_point[0]:02x}, not uncompressed"
        raise KeyEncodingError(msg)
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256R1(),
            raw_point,
        )
    except ValueError as e:
        msg = f"not a P-256 point: {e}"
        raise KeyEncodingError(msg) from e


def build_public_key_encoding(raw_point: bytes) -> bytes:
    """Wrap a raw uncompressed P-256 point as DER SubjectPublicKeyInfo."""
    return load_public_key(raw_point).public_bytes(
        encoding=Encoding.DER,
        format=PublicFormat.SubjectPublicKeyInfo,
    )
