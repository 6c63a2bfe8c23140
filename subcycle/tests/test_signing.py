from __future__ import annotations

import hashlib
import hmac

import pytest

from subcycle.app.errors import WebhookVerificationError
from subcycle.app.webhooks import compute_signature, verify_signature, verify_timestamp, verify_webhook_request
from subcycle.app.webhooks.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, signature_header

SECRET = "whsec_test_secret_value"
BODY = b'{"id":"evt_1","type":"payment.processed"}'


def test_signature_is_hex_hmac_sha256():
    expected = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()

    assert compute_signature(BODY, SECRET) == expected
    assert compute_signature(BODY.decode(), SECRET) == expected
    assert signature_header(BODY, SECRET) == f"sha256={expected}"


def test_verify_accepts_prefixed_and_bare_signatures():
    digest = compute_signature(BODY, SECRET)

    assert verify_signature(BODY, f"sha256={digest}", SECRET)
    assert verify_signature(BODY, digest, SECRET)


@pytest.mark.parametrize(
    "body,signature,secret",
    [
        (BODY + b" ", None, SECRET),
        (BODY, None, "another-secret"),
        (BODY, "", SECRET),
        (BODY, "sha256=not-hex", SECRET),
    ],
)
def test_verify_rejects_tampering(body, signature, secret):
    provided = signature if signature is not None else signature_header(BODY, SECRET)

    assert verify_signature(body, provided, secret) is False


def test_timestamp_window():
    assert verify_timestamp(1000, now=1300, tolerance=300)
    assert verify_timestamp("1600", now=1300, tolerance=300)
    assert not verify_timestamp(999, now=1300, tolerance=300)
    assert not verify_timestamp("soon", now=1300)
    assert not verify_timestamp(None, now=1300)


def test_verify_webhook_request_checks_timestamp_then_signature():
    headers = {SIGNATURE_HEADER.lower(): signature_header(BODY, SECRET), TIMESTAMP_HEADER: "5000"}

    verify_webhook_request(BODY, headers, SECRET, now=5100)

    with pytest.raises(WebhookVerificationError) as stale:
        verify_webhook_request(BODY, headers, SECRET, now=6000)
    assert stale.value.code == "stale_timestamp"
    assert stale.value.status_code == 401

    with pytest.raises(WebhookVerificationError) as forged:
        verify_webhook_request(BODY + b"x", headers, SECRET, now=5100)
    assert forged.value.code == "invalid_signature"
