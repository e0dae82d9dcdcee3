from backend.app.security import (
    INVALID_DEVICE_KEY,
    INVALID_SIGNATURE,
    INVALID_TIMESTAMP,
    constant_time_equals,
    sign_body,
    verify_device_request,
)

NOW = 1_760_000_000_000
SKEW = 5 * 60 * 1000
BODY = '{"events":[]}'


def _verify(**overrides):
    ts = str(overrides.pop("ts", NOW))
    kwargs = dict(
        expected_key="k1",
        presented_key="k1",
        timestamp=ts,
        signature=sign_body("k1", ts, BODY),
        raw_body=BODY,
        max_skew_ms=SKEW,
        now_ms=NOW,
    )
    kwargs.update(overrides)
    return verify_device_request(**kwargs)


def test_signature_is_hex_hmac_of_timestamp_dot_body():
    sig = sign_body("k1", "123", "{}")
    assert len(sig) == 64
    assert int(sig, 16) >= 0
    assert sig == sign_body("k1", "123", "{}")
    assert sig != sign_body("k1", "124", "{}")
    assert sig != sign_body("k2", "123", "{}")


def test_constant_time_equals_handles_length_and_none():
    assert constant_time_equals("abc", "abc") is True
    assert constant_time_equals("abc", "abd") is False
    assert constant_time_equals("abc", "abcd") is False
    assert constant_time_equals(None, "") is True


def test_valid_request_passes():
    assert _verify() is None


def test_uppercase_signature_is_accepted():
    ts = str(NOW)
    assert _verify(signature=sign_body("k1", ts, BODY).upper()) is None


def test_key_is_checked_first():
    # Wrong key wins over a stale timestamp and a bad signature.
    assert _verify(presented_key="nope", ts=NOW - 10 * SKEW, signature="x") == INVALID_DEVICE_KEY
    assert _verify(presented_key=None) == INVALID_DEVICE_KEY
    assert _verify(expected_key="") == INVALID_DEVICE_KEY


def test_timestamp_window_is_symmetric():
    assert _verify(ts=NOW - SKEW) is None
    assert _verify(ts=NOW + SKEW) is None
    assert _verify(ts=NOW - SKEW - 1) == INVALID_TIMESTAMP
    assert _verify(ts=NOW + SKEW + 1) == INVALID_TIMESTAMP


def test_non_numeric_timestamp_is_rejected():
    assert _verify(timestamp="yesterday", signature="x") == INVALID_TIMESTAMP
    assert _verify(timestamp=None, signature="x") == INVALID_TIMESTAMP


def test_signature_over_different_body_is_rejected():
    ts = str(NOW)
    assert _verify(signature=sign_body("k1", ts, '{"events":[1]}')) == INVALID_SIGNATURE
    assert _verify(signature=None) == INVALID_SIGNATURE


def test_signature_covers_body_bytes():
    body = '{"events":[],"note":"Müller"}'
    assert sign_body("k1", "123", body.encode("utf-8")) == sign_body("k1", "123", body)


def test_non_utf8_body_verifies_over_raw_bytes():
    raw = b'{"events":[],"note":"\xff\xfe"}'
    ts = str(NOW)
    assert _verify(raw_body=raw, signature=sign_body("k1", ts, raw)) is None
    assert _verify(raw_body=raw, signature=sign_body("k1", ts, raw.decode("latin-1"))) == INVALID_SIGNATURE
