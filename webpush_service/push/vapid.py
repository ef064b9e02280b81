"""
VAPID (RFC 8292) authorization for push service requests.

The server identifies itself to a push service with a short-lived ES256 JWT
whose audience is the origin of the subscription endpoint, plus its public
key. Tokens are valid for twelve hours; push services reject longer windows.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlsplit

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from webpush_service.push.errors import VapidConfigError, VapidSigningError
from webpush_service.push.types import utcnow

TOKEN_LIFETIME = timedelta(hours=12)
PUBLIC_KEY_LENGTH = 65  # uncompressed P-256 point: 0x04 || X || Y
PRIVATE_KEY_LENGTH = 32
JWT_HEADER = {"typ": "JWT", "alg": "ES256"}

_MAILTO_SUBJECT = re.compile(r"^mailto:[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_B64URL = re.compile(r"^[A-Za-z0-9_-]+$")


def b64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode URL-safe base64, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _json_segment(obj: dict) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def is_valid_subject(subject: str) -> bool:
    if not subject:
        return False
    if subject.startswith("mailto:"):
        return bool(_MAILTO_SUBJECT.match(subject))
    if subject.startswith("https://"):
        return bool(urlsplit(subject).hostname)
    return False


@dataclass(frozen=True)
class VapidKeyPair:
    """
    The server's VAPID identity.

    Both keys are held in raw form: the 65-byte uncompressed public point and
    the 32-byte private scalar. Build it with ``from_base64url`` so the
    material is validated once at startup.
    """

    subject: str
    public_key: bytes
    private_key: bytes

    def __post_init__(self):
        if not is_valid_subject(self.subject):
            raise VapidConfigError(
                f"VAPID subject must be a mailto: address or https: URL, got {self.subject!r}"
            )
        if len(self.public_key) != PUBLIC_KEY_LENGTH or self.public_key[0] != 0x04:
            raise VapidConfigError(
                f"VAPID public key must be a {PUBLIC_KEY_LENGTH}-byte uncompressed P-256 point"
            )
        if len(self.private_key) != PRIVATE_KEY_LENGTH:
            raise VapidConfigError(f"VAPID private key must be exactly {PRIVATE_KEY_LENGTH} bytes")
        derived = _public_bytes(self.signing_key())
        if derived != self.public_key:
            raise VapidConfigError("VAPID public key does not match the private key")

    @classmethod
    def from_base64url(cls, subject: str, public_key: str, private_key: str) -> "VapidKeyPair":
        if not subject or not public_key or not private_key:
            raise VapidConfigError(
                "VAPID subject, public key and private key must all be configured"
            )
        return cls(
            subject=subject,
            public_key=_decode_key(public_key, "public", PUBLIC_KEY_LENGTH),
            private_key=_decode_key(private_key, "private", PRIVATE_KEY_LENGTH),
        )

    @property
    def public_key_b64(self) -> str:
        return b64url_encode(self.public_key)

    def signing_key(self) -> ec.EllipticCurvePrivateKey:
        try:
            return ec.derive_private_key(
                int.from_bytes(self.private_key, "big"), ec.SECP256R1()
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise VapidConfigError(f"VAPID private key is not a valid P-256 scalar: {exc}")


def _decode_key(value: str, kind: str, length: int) -> bytes:
    expected_chars = len(b64url_encode(b"\0" * length))
    if len(value) != expected_chars or not _B64URL.match(value):
        raise VapidConfigError(
            f"VAPID {kind} key must be {expected_chars} base64url characters without padding"
        )
    try:
        raw = b64url_decode(value)
    except (binascii.Error, ValueError) as exc:
        raise VapidConfigError(f"VAPID {kind} key is not valid base64url: {exc}")
    if len(raw) != length:
        raise VapidConfigError(f"VAPID {kind} key must decode to {length} bytes")
    return raw


def _public_bytes(private_key: ec.EllipticCurvePrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def audience_for(endpoint: str) -> str:
    """Origin (scheme and host) of a push endpoint."""
    parts = urlsplit(endpoint)
    if not parts.scheme or not parts.hostname:
        raise VapidSigningError(f"Cannot derive VAPID audience from endpoint {endpoint!r}")
    # netloc keeps IPv6 brackets and the port; userinfo is not part of an origin.
    host = parts.netloc.rpartition("@")[2].lower()
    return f"{parts.scheme}://{host}"


def vapid_claims(endpoint: str, subject: str, now: datetime) -> dict:
    # Insertion order is the serialized order.
    return {
        "aud": audience_for(endpoint),
        "exp": int((now + TOKEN_LIFETIME).timestamp()),
        "sub": subject,
    }


def unsigned_token(endpoint: str, subject: str, now: datetime) -> str:
    """``b64url(header) + "." + b64url(claims)``, the part that gets signed."""
    return f"{_json_segment(JWT_HEADER)}.{_json_segment(vapid_claims(endpoint, subject, now))}"


def build_vapid_token(
    endpoint: str,
    key_pair: VapidKeyPair,
    now: datetime,
    signing_key: Optional[ec.EllipticCurvePrivateKey] = None,
) -> str:
    """Signed ES256 JWT for one endpoint origin."""
    signing_input = unsigned_token(endpoint, key_pair.subject, now)
    key = signing_key or key_pair.signing_key()
    try:
        der = key.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
    except Exception as exc:
        raise VapidSigningError(f"Failed to sign VAPID token: {exc}") from exc
    # JWS wants the raw r || s form, not DER.
    r, s = decode_dss_signature(der)
    signature = r.to_bytes(32, "big") + s.to_bytes(32, "big")
    return f"{signing_input}.{b64url_encode(signature)}"


class VapidAuthenticator:
    """Builds ``Authorization`` header values for push service requests."""

    def __init__(self, key_pair: VapidKeyPair):
        self.key_pair = key_pair
        self._signing_key = key_pair.signing_key()

    def authorize(self, endpoint: str, now: Optional[datetime] = None) -> str:
        token = build_vapid_token(
            endpoint,
            self.key_pair,
            now or utcnow(),
            signing_key=self._signing_key,
        )
        return f"vapid t={token}, k={self.key_pair.public_key_b64}"
