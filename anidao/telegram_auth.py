# anidao/telegram_auth.py
"""
Verification of Telegram Login Widget payloads.

The widget signs every field it sends (except ``hash``) with
HMAC-SHA256, keyed by SHA256 of the bot token. See
https://core.telegram.org/widgets/login#checking-authorization
"""
import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

MAX_AUTH_AGE = 24 * 60 * 60  # seconds
MAX_CLOCK_SKEW = 5 * 60  # auth_date may run this far ahead of our clock
SESSION_TTL = timedelta(days=3)

def build_data_check_string(payload: Mapping) -> str:
    """`key=value` lines for every signed field, sorted by key."""
    pairs = [(k, v) for k, v in payload.items() if k != "hash" and v is not None]
    return "\n".join(f"{k}={v}" for k, v in sorted(pairs))

def compute_signature(payload: Mapping, bot_token: str) -> str:
    secret = hashlib.sha256(bot_token.encode("utf-8")).digest()
    return hmac.new(secret, build_data_check_string(payload).encode("utf-8"), hashlib.sha256).hexdigest()

def verify_signature(payload: Mapping, bot_token: str) -> bool:
    supplied = payload.get("hash")
    if not supplied or not isinstance(supplied, str) or not bot_token:
        return False
    return hmac.compare_digest(compute_signature(payload, bot_token), supplied.lower())

def is_auth_expired(auth_date, now: Optional[float] = None) -> bool:
    """True when the assertion is older than 24 hours, dated in the future, or auth_date is unusable."""
    try:
        issued = int(auth_date)
    except (TypeError, ValueError):
        return True
    current = int(now if now is not None else time.time())
    if issued - current > MAX_CLOCK_SKEW:
        return True
    return current - issued > MAX_AUTH_AGE

def session_expiry(now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) + SESSION_TTL

def is_admin_telegram_id(telegram_id, admin_id: Optional[str]) -> bool:
    if not admin_id or telegram_id is None:
        return False
    return str(telegram_id) == str(admin_id)
