import pytest

from services.payments.stripe_webhook import (
    compute_signature,
    get_webhook_secret,
    parse_signature_header,
    verify_stripe_signature,
)

SECRET = "whsec_test"
PAYLOAD = b'{"id":"evt_1","type":"invoice.paid"}'
TIMESTAMP = 1_710_504_000


def _header(payload=PAYLOAD, timestamp=TIMESTAMP, secret=SECRET):
    return f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"


def test_valid_signature_is_accepted():
    assert verify_stripe_signature(
        payload=PAYLOAD, signature_header=_header(), secret=SECRET, tolerance_seconds=300, now=TIMESTAMP + 10
    )


def test_any_matching_v1_signature_is_enough():
    header = f"t={TIMESTAMP},v1=deadbeef,v1={compute_signature(PAYLOAD, TIMESTAMP, SECRET)}"
    assert verify_stripe_signature(
        payload=PAYLOAD, signature_header=header, secret=SECRET, tolerance_seconds=300, now=TIMESTAMP
    )


def test_tampered_payload_or_wrong_secret_is_rejected():
    header = _header()
    assert not verify_stripe_signature(
        payload=PAYLOAD + b" ", signature_header=header, secret=SECRET, tolerance_seconds=300, now=TIMESTAMP
    )
    assert not verify_stripe_signature(
        payload=PAYLOAD, signature_header=header, secret="whsec_other", tolerance_seconds=300, now=TIMESTAMP
    )


def test_timestamp_outside_tolerance_is_rejected():
    assert not verify_stripe_signature(
        payload=PAYLOAD, signature_header=_header(), secret=SECRET, tolerance_seconds=300, now=TIMESTAMP + 301
    )
    assert verify_stripe_signature(
        payload=PAYLOAD, signature_header=_header(), secret=SECRET, tolerance_seconds=0, now=TIMESTAMP + 10_000
    )


@pytest.mark.parametrize("header", [None, "", "v1=abc", "t=notanumber,v1=abc", f"t={TIMESTAMP}"])
def test_malformed_headers_are_rejected(header):
    assert not verify_stripe_signature(
        payload=PAYLOAD, signature_header=header, secret=SECRET, tolerance_seconds=300, now=TIMESTAMP
    )


def test_parse_signature_header_collects_all_v1_values():
    assert parse_signature_header("t=10, v1=a, v0=legacy, v1=b") == (10, ["a", "b"])


def test_missing_secret_raises(monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    with pytest.raises(RuntimeError):
        get_webhook_secret()

    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", SECRET)
    assert verify_stripe_signature(payload=PAYLOAD, signature_header=_header(), tolerance_seconds=300, now=TIMESTAMP)
