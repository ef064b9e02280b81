import json
import os
import re
from dataclasses import dataclass, field
from typing import Dict

import http_ece
from cryptography.hazmat.primitives.asymmetric import ec

from webpush_service.push.errors import InvalidPayloadError, PayloadEncryptionError
from webpush_service.push.types import URGENCY_LEVELS, NotificationPayload, Subscription
from webpush_service.push.vapid import b64url_decode

CONTENT_ENCODING = "aes128gcm"
# Largest plaintext that fits a single 4096-byte aes128gcm record:
# 4096 - 86 (salt, rs, keyid header) - 16 (tag) - 1 (padding delimiter).
MAX_PAYLOAD_BYTES = 3993
RECORD_SIZE = 4096
# RFC 8030 Topic header: up to 32 characters of the URL-safe base64 alphabet.
MAX_TOPIC_LENGTH = 32
_TOPIC = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class EncodedPayload:
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)


class PayloadEncoder:
    """
    Serializes a NotificationPayload into the JSON body and push headers.

    Validation of caller input lives here so that a bad notification is
    rejected before any subscription is contacted.
    """

    def __init__(
        self,
        default_ttl: int = 86400,
        default_urgency: str = "normal",
        default_icon: str = "/favicon.ico",
        default_badge: str = "/favicon.ico",
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    ):
        self.default_ttl = default_ttl
        self.default_urgency = default_urgency
        self.default_icon = default_icon
        self.default_badge = default_badge
        self.max_payload_bytes = max_payload_bytes

    def encode(self, payload: NotificationPayload) -> EncodedPayload:
        if not payload.title or not payload.title.strip():
            raise InvalidPayloadError("Notification title must not be empty")
        if not payload.message or not payload.message.strip():
            raise InvalidPayloadError("Notification message must not be empty")

        ttl = self.default_ttl if payload.ttl is None else payload.ttl
        if ttl < 0:
            raise InvalidPayloadError(f"TTL must be >= 0, got {ttl}")
        urgency = payload.urgency or self.default_urgency
        if urgency not in URGENCY_LEVELS:
            raise InvalidPayloadError(
                f"Urgency must be one of {', '.join(URGENCY_LEVELS)}, got {urgency!r}"
            )
        if payload.topic is not None and (
            len(payload.topic) > MAX_TOPIC_LENGTH or not _TOPIC.fullmatch(payload.topic)
        ):
            raise InvalidPayloadError(
                f"Topic must be 1-{MAX_TOPIC_LENGTH} URL-safe base64 characters, got {payload.topic!r}"
            )

        document = {
            "title": payload.title,
            "message": payload.message,
            "icon": payload.icon or self.default_icon,
            "badge": payload.badge or self.default_badge,
            "data": dict(payload.data),
        }
        # Optional display hints only go on the wire when set.
        if payload.image:
            document["image"] = payload.image
        if payload.tag:
            document["tag"] = payload.tag
        if payload.require_interaction:
            document["requireInteraction"] = True
        if payload.silent:
            document["silent"] = True

        try:
            body = json.dumps(document, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise InvalidPayloadError(f"Notification data is not JSON serializable: {exc}")
        if len(body) > self.max_payload_bytes:
            raise InvalidPayloadError(
                f"Encoded payload is {len(body)} bytes, limit is {self.max_payload_bytes}"
            )

        headers = {
            "Content-Type": "application/json",
            "Content-Encoding": CONTENT_ENCODING,
            "TTL": str(ttl),
            "Urgency": urgency,
        }
        if payload.topic:
            headers["Topic"] = payload.topic
        return EncodedPayload(body=body, headers=headers)


class PayloadEncrypter:
    """RFC 8291 message encryption for one subscription."""

    def __init__(self, record_size: int = RECORD_SIZE):
        self.record_size = record_size

    def encrypt(self, body: bytes, subscription: Subscription) -> bytes:
        try:
            receiver_key = b64url_decode(subscription.p256dh)
            auth_secret = b64url_decode(subscription.auth)
        except (ValueError, UnicodeEncodeError) as exc:
            raise PayloadEncryptionError(f"Subscription keys are not valid base64url: {exc}")

        # A fresh ephemeral key and salt per message.
        server_key = ec.generate_private_key(ec.SECP256R1())
        try:
            return http_ece.encrypt(
                body,
                salt=os.urandom(16),
                private_key=server_key,
                dh=receiver_key,
                auth_secret=auth_secret,
                rs=self.record_size,
                version=CONTENT_ENCODING,
            )
        except Exception as exc:
            raise PayloadEncryptionError(f"Failed to encrypt payload: {exc}") from exc

    def prepare(
        self, encoded: EncodedPayload, subscription: Subscription, enabled: bool = True
    ) -> EncodedPayload:
        """Body and headers to send to one subscription."""
        if not enabled:
            headers = {k: v for k, v in encoded.headers.items() if k != "Content-Encoding"}
            return EncodedPayload(body=encoded.body, headers=headers)
        return EncodedPayload(
            body=self.encrypt(encoded.body, subscription),
            headers=dict(encoded.headers),
        )
