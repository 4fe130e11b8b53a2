"""Generate a VAPID key pair for a client application.

Usage:
    webpushrelay-keygen [--pem <path>]

Prints the public key (to register via /webpushserverkey), the
private key and a random auth secret, all as unpadded base64url.
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)
from py_vapid import Vapid01

from webpushrelay.relay.keycodec import encode_wire_base64

AUTH_SECRET_LEN = 16


@dataclass
class VapidKeyPair:
    """A P-256 signing key plus the client's auth secret."""

    vapid: Vapid01
    auth: bytes

    @property
    def private_key(self) -> ec.EllipticCurvePrivateKey:
        return self.vapid.private_key

    @property
    def public_key_raw(self) -> bytes:
        """Uncompressed point, the form sent in Crypto-Key."""
        return self.vapid.public_key.public_bytes(
            encoding=Encoding.X962,
            format=PublicFormat.UncompressedPoint,
        )

    @property
    def private_key_raw(self) -> bytes:
        return self.private_key.private_numbers().private_value.to_bytes(32, "big")


def generate_keypair() -> VapidKeyPair:
    vapid = Vapid01()
    vapid.generate_keys()
    return VapidKeyPair(vapid=vapid, auth=os.urandom(AUTH_SECRET_LEN))


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    pem_path: Path | None = None
    if args:
        if len(args) != 2 or args[0] != "--pem":
            raise SystemExit(__doc__)
        pem_path = Path(args[1])

    pair = generate_keypair()
    print(f"public key={encode_wire_base64(pair.public_key_raw)}")
    print(f"private key={encode_wire_base64(pair.private_key_raw)}")
    print(f"auth={encode_wire_base64(pair.auth)}")
    if pem_path is not None:
        pair.vapid.save_key(str(pem_path))
        print(f"saved private key to {pem_path}", file=sys.stderr)


if __name__ == "__main__":
    main()
