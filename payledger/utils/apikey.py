"""API key generation and validation helpers."""
from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy.orm import Session

from payledger.config import get_settings
from payledger.models.api_key import ApiKey
from payledger.utils.time import ensure_utc


def hash_key(raw: str) -> str:
    """Return an HMAC-SHA256 hash for the provided API key."""

    return hmac.new(get_settings().SECRET_KEY.encode(), raw.encode(), hashlib.sha256).hexdigest()


def gen_key(prefix_len: int = 6) -> tuple[str, str, str]:
    """Generate a user-facing API key, its prefix, and the stored hash."""

    prefix = "pl_" + secrets.token_hex(prefix_len)[:prefix_len]
    suffix = secrets.token_urlsafe(32)
    raw = f"{prefix}.{suffix}"
    return raw, prefix, hash_key(raw)


def is_legacy_token(raw: str) -> bool:
    dev_key = get_settings().DEV_API_KEY
    return bool(dev_key) and secrets.compare_digest(raw.encode(), dev_key.encode())


def find_valid_key(db: Session, key_hash: str) -> Optional[ApiKey]:
    """Return the active, unexpired API key stored under ``key_hash``."""

    key = (
        db.query(ApiKey)
        .filter(ApiKey.key_hash == key_hash, ApiKey.is_active.is_(True))
        .first()
    )
    if key and (not key.expires_at or ensure_utc(key.expires_at) > datetime.now(UTC)):
        return key
    return None
