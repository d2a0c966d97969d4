"""Security dependencies for API key validation and scope enforcement."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Set

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from payledger.config import DEV_API_KEY_ALLOWED, ENV
from payledger.db import get_db
from payledger.dependencies import get_cache_service
from payledger.models.api_key import ApiScope
from payledger.services.cache import CacheService
from payledger.utils.apikey import find_valid_key, hash_key, is_legacy_token
from payledger.utils.audit import log_audit
from payledger.utils.errors import error_response
from payledger.utils.time import parse_iso_utc, utcnow

logger = logging.getLogger(__name__)

STAFF_SCOPES = {ApiScope.support, ApiScope.admin}


@dataclass(frozen=True)
class Principal:
    """Authenticated caller resolved from an API key."""

    api_key_id: int
    scope: ApiScope
    prefix: str
    user_id: int | None = None
    expires_at: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.scope in STAFF_SCOPES

    @property
    def is_legacy(self) -> bool:
        return self.api_key_id == 0

    def to_session(self) -> dict[str, Any]:
        data = asdict(self)
        data["scope"] = self.scope.value
        return data

    @classmethod
    def from_session(cls, data: Any) -> "Principal | None":
        """Rebuild a principal from a cached session; ``None`` if unusable."""

        if not isinstance(data, dict):
            return None
        try:
            principal = cls(
                api_key_id=int(data["api_key_id"]),
                scope=ApiScope(data["scope"]),
                prefix=str(data["prefix"]),
                user_id=data.get("user_id"),
                expires_at=data.get("expires_at"),
            )
        except (KeyError, TypeError, ValueError):
            return None
        if principal.expires_at and parse_iso_utc(principal.expires_at) <= utcnow():
            return None
        return principal


LEGACY_PRINCIPAL = Principal(api_key_id=0, scope=ApiScope.admin, prefix="legacy")


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def require_api_key(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
    cache: CacheService = Depends(get_cache_service),
) -> Principal:
    """Validate API key tokens and return the calling principal."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    if is_legacy_token(token):
        if not DEV_API_KEY_ALLOWED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=error_response("LEGACY_KEY_FORBIDDEN", "Legacy dev key disabled."),
            )
        log_audit(
            db,
            actor="legacy-apikey",
            action="LEGACY_API_KEY_USED",
            entity="ApiKey",
            entity_id=0,
            data={"env": ENV},
        )
        db.commit()
        return LEGACY_PRINCIPAL

    key_hash = hash_key(token)
    principal = Principal.from_session(cache.get_session(key_hash))
    if principal is not None:
        return principal

    key = find_valid_key(db, key_hash)
    if key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid or expired API key"),
        )

    key.last_used_at = utcnow()
    log_audit(
        db,
        actor=f"apikey:{key.prefix}",
        action="API_KEY_USED",
        entity="ApiKey",
        entity_id=key.id,
        data={"scope": key.scope.value, "prefix": key.prefix},
    )
    db.commit()

    principal = Principal(
        api_key_id=key.id,
        scope=key.scope,
        prefix=key.prefix,
        user_id=key.user_id,
        expires_at=key.expires_at.isoformat() if key.expires_at else None,
    )
    cache.set_session(key_hash, principal.to_session())
    return principal


def require_scope(allowed: Set[ApiScope]) -> Callable:
    """Enforce that the key holds one of the allowed scopes (admin always passes)."""

    if not allowed:
        raise RuntimeError("require_scope needs a non-empty set of ApiScope")

    def _dep(principal: Principal = Depends(require_api_key)) -> Principal:
        if principal.scope == ApiScope.admin or principal.scope in allowed:
            return principal
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response(
                "INSUFFICIENT_SCOPE",
                f"Requires one of: {sorted(scope.value for scope in allowed)}",
            ),
        )

    return _dep


def ensure_self_or_staff(
    principal: Principal, user_id: int, *, staff: Set[ApiScope] = STAFF_SCOPES
) -> None:
    """Allow the given staff scopes, or a key bound to ``user_id`` itself."""

    if principal.scope in staff or principal.user_id == user_id:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=error_response("FORBIDDEN", "Access to this user's data is not allowed."),
    )


__all__ = [
    "LEGACY_PRINCIPAL",
    "Principal",
    "ensure_self_or_staff",
    "require_api_key",
    "require_scope",
]
