"""HMAC signatures on outbound webhooks."""

import hashlib
import hmac

import pytest

from dotmac.recurring.webhooks.signing import (
    SIGNATURE_PREFIX,
    generate_signature,
    signature_header,
    verify_signature,
)

PAYLOAD = b'{"type":"invoice.paid"}'
SECRET = "whsec_test"


@pytest.mark.unit
def test_generate_signature_is_hex_hmac_sha256():
    expected = hmac.new(SECRET.encode(), PAYLOAD, hashlib.sha256).hexdigest()

    assert generate_signature(PAYLOAD, SECRET) == expected


@pytest.mark.unit
def test_header_carries_prefix():
    header = signature_header(PAYLOAD, SECRET)

    assert header.startswith(SIGNATURE_PREFIX)
    assert header.removeprefix(SIGNATURE_PREFIX) == generate_signature(PAYLOAD, SECRET)


@pytest.mark.unit
@pytest.mark.parametrize("prefixed", [True, False])
def test_verify_accepts_valid_signature(prefixed):
    header = signature_header(PAYLOAD, SECRET) if prefixed else generate_signature(PAYLOAD, SECRET)

    assert verify_signature(PAYLOAD, header, SECRET)


@pytest.mark.unit
@pytest.mark.parametrize(
    "payload,header,secret",
    [
        (PAYLOAD, None, SECRET),
        (PAYLOAD, "", SECRET),
        (b'{"type":"invoice.void"}', signature_header(PAYLOAD, SECRET), SECRET),
        (PAYLOAD, signature_header(PAYLOAD, SECRET), "other-secret"),
    ],
)
def test_verify_rejects(payload, header, secret):
    assert not verify_signature(payload, header, secret)
