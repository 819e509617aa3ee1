"""
Idempotency keys for application submissions.

The key is a digest of (subject, target, time bucket). Retries inside the same
window collapse to the same key without any persisted dedup state.
"""

import hashlib
from datetime import datetime
from typing import Optional

from api.models import utcnow

DEFAULT_WINDOW_SECONDS = 300  # 5 minutes
KEY_LENGTH = 16


def time_bucket(at: datetime, window_seconds: int = DEFAULT_WINDOW_SECONDS) -> int:
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    return int(at.timestamp()) // int(window_seconds)


def make_idempotency_key(
    subject: str,
    target: str,
    at: Optional[datetime] = None,
    *,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
    length: int = KEY_LENGTH,
) -> str:
    """Lowercase hex key, stable for identical (subject, target) within one window."""
    bucket = time_bucket(at or utcnow(), window_seconds)
    raw = f"{subject}:{target}:{bucket}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:length]
