import json
from datetime import datetime, timezone

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from webpush_service.push.errors import VapidConfigError, VapidSigningError
from webpush_service.push.vapid import (
    VapidAuthenticator,
    VapidKeyPair,
    audience_for,
    b64url_decode,
    b64url_encode,
    build_vapid_token,
    is_valid_subject,
    unsigned_token,
)
from webpush_service.tests.factories import VAPID_SUBJECT, private_bytes, public_bytes

# --- Test Data ---
ENDPOINT = "https://fcm.googleapis.com/fcm/send/abc123"
NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _segments(token):
    header, claims, signature = token.split(".")
    return b64url_decode(header), b64url_decode(claims), b64url_decode(signature)


def test_header_and_claims_are_compact_and_ordered(vapid_key_pair):
    header, claims, _ = _segments(build_vapid_token(ENDPOINT, vapid_key_pair, NOW))

    assert header == b'{"typ":"JWT","alg":"ES256"}'
    expected_exp = int(NOW.timestamp()) + 12 * 3600
    assert claims == (
        f'{{"aud":"https://fcm.googleapis.com","exp":{expected_exp},"sub":"{VAPID_SUBJECT}"}}'
    ).encode()


def test_unsigned_part_is_deterministic(vapid_key_pair):
    first = build_vapid_token(ENDPOINT, vapid_key_pair, NOW)
    second = build_vapid_token(ENDPOINT, vapid_key_pair, NOW)

    # ECDSA signatures are randomized; everything before them is not.
    assert first.rsplit(".", 1)[0] == second.rsplit(".", 1)[0]
    assert first.rsplit(".", 1)[0] == unsigned_token(ENDPOINT, VAPID_SUBJECT, NOW)


def test_signature_verifies_against_public_key(vapid_key_pair):
    token = build_vapid_token(ENDPOINT, vapid_key_pair, NOW)
    signing_input, _, signature_b64 = token.rpartition(".")
    signature = b64url_decode(signature_b64)

    assert len(signature) == 64
    der = encode_dss_signature(
        int.from_bytes(signature[:32], "big"), int.from_bytes(signature[32:], "big")
    )
    public_key = ec.EllipticCurvePublicKey.from_encoded_point(
        ec.SECP256R1(), vapid_key_pair.public_key
    )
    public_key.verify(der, signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))

    with pytest.raises(InvalidSignature):
        public_key.verify(der, b"tampered", ec.ECDSA(hashes.SHA256()))


def test_authorization_header_format(vapid_key_pair):
    header = VapidAuthenticator(vapid_key_pair).authorize(ENDPOINT, NOW)

    assert header.startswith("vapid t=")
    token, _, key = header[len("vapid t="):].partition(", k=")
    assert token.count(".") == 2
    assert key == vapid_key_pair.public_key_b64
    assert len(key) == 87


def test_exp_is_twelve_hours_after_now(vapid_key_pair):
    header = VapidAuthenticator(vapid_key_pair).authorize(ENDPOINT, NOW)
    token = header[len("vapid t="):].split(", k=")[0]
    claims = json.loads(_segments(token)[1])

    assert claims["exp"] - int(NOW.timestamp()) == 43200


@pytest.mark.parametrize(
    "endpoint, audience",
    [
        ("https://fcm.googleapis.com/fcm/send/abc", "https://fcm.googleapis.com"),
        ("https://updates.push.services.mozilla.com/wpush/v2/x?y=1", "https://updates.push.services.mozilla.com"),
        ("https://push.example.com:8443/send/1", "https://push.example.com:8443"),
        ("http://localhost:8080/push", "http://localhost:8080"),
        ("https://[::1]:8443/push", "https://[::1]:8443"),
        ("https://[2001:db8::1]/push", "https://[2001:db8::1]"),
        ("https://user:pw@Push.Example.com/x", "https://push.example.com"),
    ],
)
def test_audience_is_endpoint_origin(endpoint, audience):
    assert audience_for(endpoint) == audience


def test_audience_requires_scheme_and_host():
    with pytest.raises(VapidSigningError):
        audience_for("not a url")


@pytest.mark.parametrize(
    "subject, valid",
    [
        ("mailto:admin@example.com", True),
        ("https://example.com", True),
        ("https://example.com/contact", True),
        ("not-an-email", False),
        ("mailto:admin", False),
        ("http://example.com", False),
        ("", False),
    ],
)
def test_subject_validation(subject, valid):
    assert is_valid_subject(subject) is valid


def test_key_pair_rejects_bad_subject(vapid_private_key):
    with pytest.raises(VapidConfigError):
        VapidKeyPair(
            subject="not-an-email",
            public_key=public_bytes(vapid_private_key),
            private_key=private_bytes(vapid_private_key),
        )


def test_key_pair_rejects_mismatched_keys(vapid_private_key):
    other = ec.generate_private_key(ec.SECP256R1())
    with pytest.raises(VapidConfigError, match="does not match"):
        VapidKeyPair(
            subject=VAPID_SUBJECT,
            public_key=public_bytes(other),
            private_key=private_bytes(vapid_private_key),
        )


def test_from_base64url_round_trips(vapid_private_key, vapid_key_pair):
    pair = VapidKeyPair.from_base64url(
        VAPID_SUBJECT,
        b64url_encode(public_bytes(vapid_private_key)),
        b64url_encode(private_bytes(vapid_private_key)),
    )
    assert pair == vapid_key_pair


@pytest.mark.parametrize(
    "public_key, private_key",
    [
        ("", "x" * 43),
        ("A" * 86, "A" * 43),
        ("A" * 87, "A" * 42),
        ("A" * 86 + "=", "A" * 43),
    ],
)
def test_from_base64url_rejects_bad_lengths(public_key, private_key):
    with pytest.raises(VapidConfigError):
        VapidKeyPair.from_base64url(VAPID_SUBJECT, public_key, private_key)


def test_signing_failure_is_reported(vapid_key_pair, mocker):
    broken = mocker.MagicMock()
    broken.sign.side_effect = ValueError("hsm offline")

    with pytest.raises(VapidSigningError, match="hsm offline"):
        build_vapid_token(ENDPOINT, vapid_key_pair, NOW, signing_key=broken)
