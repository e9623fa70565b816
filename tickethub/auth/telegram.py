from typing import Any, Dict, Optional
from urllib.parse import parse_qsl
import hashlib
import hmac
import json
import time


class InitDataError(ValueError):
    pass


def build_data_check_string(fields: Dict[str, str]) -> str:
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields) if key != "hash")


def compute_init_data_hash(fields: Dict[str, str], bot_token: str) -> str:
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    return hmac.new(secret, build_data_check_string(fields).encode(), hashlib.sha256).hexdigest()


def verify_init_data(
    init_data: str,
    bot_token: str,
    max_age_seconds: Optional[int] = None,
    now: Optional[float] = None
) -> Dict[str, Any]:
    """
    Validate Telegram Mini App init data and return the signed user object.

    The data check string is every field except ``hash`` sorted by key and
    joined as ``key=value`` lines, signed with HMAC-SHA256 keyed by
    HMAC-SHA256("WebAppData", bot_token).
    """
    if not init_data:
        raise InitDataError("Missing Telegram init data")
    if not bot_token:
        raise InitDataError("Telegram bot token is not configured")

    fields = dict(parse_qsl(init_data, keep_blank_values=True))
    received_hash = fields.get("hash")
    if not received_hash:
        raise InitDataError("Telegram init data is not signed")

    expected_hash = compute_init_data_hash(fields, bot_token)
    if not hmac.compare_digest(expected_hash, received_hash):
        raise InitDataError("Telegram init data signature mismatch")

    if max_age_seconds:
        try:
            auth_date = int(fields.get("auth_date", "0"))
        except ValueError:
            raise InitDataError("Invalid auth_date")
        current = now if now is not None else time.time()
        if auth_date <= 0 or current - auth_date > max_age_seconds:
            raise InitDataError("Telegram init data has expired")

    try:
        user = json.loads(fields.get("user") or "null")
    except ValueError:
        raise InitDataError("Telegram user payload is not valid JSON")
    if not isinstance(user, dict) or not user.get("id"):
        raise InitDataError("Telegram user is missing")
    return user
