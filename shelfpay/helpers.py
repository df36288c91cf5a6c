import time
import math
import re
import secrets
import string
from datetime import datetime, timedelta, timezone
import hmac
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def today(ts: float | None = None) -> str:
    # YYYY-MM-DD, used for customer join / last-order dates
    ts = now_ts() if ts is None else ts
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


def estimated_delivery(days: int = 5, ts: float | None = None) -> str:
    ts = now_ts() if ts is None else ts
    d = datetime.fromtimestamp(ts, tz=timezone.utc) + timedelta(days=days)
    return d.strftime("%A, %B %d, %Y")


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_quantity(raw: Any) -> int:
    """Requested quantity from checkout metadata.

    Absent, non-numeric or < 1 all fall back to 1. Fractions truncate.
    """
    if raw is None or isinstance(raw, bool):
        return 1
    try:
        value = float(str(raw).strip())
    except ValueError:
        return 1
    if not math.isfinite(value):
        return 1
    qty = int(value)
    return qty if qty >= 1 else 1


_B36 = string.ascii_lowercase + string.digits


def new_payment_reference(ts: float | None = None) -> str:
    # BST-<epoch ms>-<6 base36 chars>, unique per checkout attempt
    ms = int((now_ts() if ts is None else ts) * 1000)
    suffix = "".join(secrets.choice(_B36) for _ in range(6))
    return f"BST-{ms}-{suffix}"
