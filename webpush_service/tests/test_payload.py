import json

import http_ece
import pytest

from webpush_service.push.errors import InvalidPayloadError, PayloadEncryptionError
from webpush_service.push.payload import (
    MAX_PAYLOAD_BYTES,
    EncodedPayload,
    PayloadEncoder,
    PayloadEncrypter,
)
from webpush_service.push.types import NotificationPayload
from webpush_service.push.vapid import b64url_decode


@pytest.fixture
def encoder():
    return PayloadEncoder(default_ttl=3600, default_urgency="normal")


def test_body_carries_display_fields_with_defaults(encoder):
    encoded = encoder.encode(
        NotificationPayload(title="Hello", message="World", data={"url": "/inbox"})
    )

    assert json.loads(encoded.body) == {
        "title": "Hello",
        "message": "World",
        "icon": "/favicon.ico",
        "badge": "/favicon.ico",
        "data": {"url": "/inbox"},
    }
    # Compact separators keep the body small.
    assert b", " not in encoded.body


def test_optional_hints_are_included_when_set(encoder):
    encoded = encoder.encode(
        NotificationPayload(
            title="Hello",
            message="World",
            icon="/icon.png",
            image="/hero.png",
            tag="chat-1",
            require_interaction=True,
            silent=True,
        )
    )
    body = json.loads(encoded.body)

    assert body["icon"] == "/icon.png"
    assert body["image"] == "/hero.png"
    assert body["tag"] == "chat-1"
    assert body["requireInteraction"] is True
    assert body["silent"] is True


def test_headers_use_defaults(encoder):
    encoded = encoder.encode(NotificationPayload(title="t", message="m"))

    assert encoded.headers == {
        "Content-Type": "application/json",
        "Content-Encoding": "aes128gcm",
        "TTL": "3600",
        "Urgency": "normal",
    }


def test_headers_take_payload_overrides(encoder):
    encoded = encoder.encode(
        NotificationPayload(title="t", message="m", ttl=0, urgency="high", topic="news")
    )

    assert encoded.headers["TTL"] == "0"
    assert encoded.headers["Urgency"] == "high"
    assert encoded.headers["Topic"] == "news"


@pytest.mark.parametrize(
    "payload",
    [
        NotificationPayload(title="", message="m"),
        NotificationPayload(title="   ", message="m"),
        NotificationPayload(title="t", message=""),
        NotificationPayload(title="t", message="m", ttl=-5),
        NotificationPayload(title="t", message="m", urgency="urgent"),
        NotificationPayload(title="t", message="m", topic="caf\u00e9"),
        NotificationPayload(title="t", message="m", topic="has space"),
        NotificationPayload(title="t", message="m", topic="x" * 33),
        NotificationPayload(title="t", message="m", topic=""),
        NotificationPayload(title="t", message="m", data={"when": object()}),
    ],
)
def test_invalid_payloads_are_rejected(encoder, payload):
    with pytest.raises(InvalidPayloadError):
        encoder.encode(payload)


def test_oversized_payload_is_rejected(encoder):
    payload = NotificationPayload(title="t", message="x" * MAX_PAYLOAD_BYTES)

    with pytest.raises(InvalidPayloadError, match="limit"):
        encoder.encode(payload)


def test_payload_data_is_frozen():
    source = {"a": 1}
    payload = NotificationPayload(title="t", message="m", data=source)
    source["a"] = 2

    assert payload.data["a"] == 1
    with pytest.raises(TypeError):
        payload.data["b"] = 3


def test_encrypted_body_decrypts_for_receiver(encoder, make_subscription, receiver_keys):
    sub = make_subscription()
    encoded = encoder.encode(NotificationPayload(title="Secret", message="Only for you"))

    prepared = PayloadEncrypter().prepare(encoded, sub)

    assert prepared.body != encoded.body
    assert prepared.headers["Content-Encoding"] == "aes128gcm"
    plaintext = http_ece.decrypt(
        prepared.body,
        private_key=receiver_keys[sub.id],
        auth_secret=b64url_decode(sub.auth),
        version="aes128gcm",
    )
    assert plaintext == encoded.body


def test_each_encryption_uses_fresh_salt(encoder, make_subscription):
    sub = make_subscription()
    encoded = encoder.encode(NotificationPayload(title="t", message="m"))
    encrypter = PayloadEncrypter()

    first = encrypter.encrypt(encoded.body, sub)
    second = encrypter.encrypt(encoded.body, sub)

    assert first[:16] != second[:16]


def test_plaintext_mode_drops_content_encoding(encoder, make_subscription):
    encoded = encoder.encode(NotificationPayload(title="t", message="m"))

    prepared = PayloadEncrypter().prepare(encoded, make_subscription(), enabled=False)

    assert prepared.body == encoded.body
    assert "Content-Encoding" not in prepared.headers
    # The shared encoding is untouched for other subscriptions.
    assert encoded.headers["Content-Encoding"] == "aes128gcm"


def test_bad_receiver_key_raises_encryption_error(make_subscription):
    sub = make_subscription(p256dh="AAAA")

    with pytest.raises(PayloadEncryptionError):
        PayloadEncrypter().encrypt(b"{}", sub)


def test_encoded_payload_defaults_to_no_headers():
    assert EncodedPayload(body=b"").headers == {}


def test_topic_at_length_limit_is_accepted(encoder):
    topic = "a-Z_9" * 6 + "ok"
    encoded = encoder.encode(NotificationPayload(title="t", message="m", topic=topic))

    assert len(topic) == 32
    assert encoded.headers["Topic"] == topic
