import hashlib
import hmac
import time
from typing import Optional, Union


INVALID_DEVICE_KEY = "invalid_device_key"
INVALID_TIMESTAMP = "invalid_timestamp"
INVALID_SIGNATURE = "invalid_signature"


def sign_body(device_key: str, timestamp: str, raw_body: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of "{timestamp}.{raw_body}" keyed by the device key.

    Pass the body bytes exactly as received; str bodies are UTF-8 encoded.
    """
    body = raw_body if isinstance(raw_body, bytes) else raw_body.encode("utf-8")
    msg = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(device_key.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    a_bytes = (a or "").encode("utf-8")
    b_bytes = (b or "").encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)


def _parse_timestamp_ms(raw: Optional[str]) -> Optional[int]:
    text = (raw or "").strip()
    if not text or not text.lstrip("-").isdigit():
        return None
    return int(text)


def verify_device_request(
    *,
    expected_key: str,
    presented_key: Optional[str],
    timestamp: Optional[str],
    signature: Optional[str],
    raw_body: Union[str, bytes],
    max_skew_ms: int,
    now_ms: Optional[int] = None,
) -> Optional[str]:
    """
    Check a signed device request. Returns None when the request is authentic,
    otherwise the machine-readable error code to send back with a 401.

    The checks run in a fixed order (key, timestamp window, signature) and the
    caller only ever learns the first one that failed.
    """
    presented = (presented_key or "").strip()
    if not presented or not expected_key or not constant_time_equals(presented, expected_key):
        return INVALID_DEVICE_KEY

    ts = _parse_timestamp_ms(timestamp)
    now = int(time.time() * 1000) if now_ms is None else int(now_ms)
    if ts is None or abs(now - ts) > max_skew_ms:
        return INVALID_TIMESTAMP

    expected_sig = sign_body(presented, str(timestamp).strip(), raw_body)
    if not signature or not constant_time_equals(signature.strip().lower(), expected_sig):
        return INVALID_SIGNATURE
    return None
