"""API key management endpoints."""
from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payledger.db import get_db
from payledger.dependencies import get_cache_service
from payledger.models.api_key import ApiKey, ApiScope
from payledger.models.user import User
from payledger.security import Principal, require_scope
from payledger.services.cache import CacheService
from payledger.utils.apikey import gen_key
from payledger.utils.audit import actor_from_principal, log_audit
from payledger.utils.errors import error_response
from payledger.utils.time import utcnow

router = APIRouter(prefix="/apikeys", tags=["apikeys"])


# ------ Schemas ------

class CreateKeyIn(BaseModel):
    """Input for a new key; the raw key is generated server side."""
    name: str
    scope: ApiScope
    user_id: int | None = None
    days_valid: int | None = 90

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name cannot be blank")
        return value.strip()


class ApiKeyCreateOut(BaseModel):
    """POST /apikeys response: the only time the raw key is returned."""
    id: int
    name: str
    scope: ApiScope
    user_id: int | None
    key: str
    expires_at: datetime | None


class ApiKeyRead(BaseModel):
    """GET response (never the key)."""
    id: int
    name: str
    prefix: str
    scope: ApiScope
    user_id: int | None
    is_active: bool
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error_response("APIKEY_NOT_FOUND", "API key not found."),
    )


# ------ Routes ------

@router.post(
    "",
    response_model=ApiKeyCreateOut,
    status_code=status.HTTP_201_CREATED,
)
def create_api_key(
    payload: CreateKeyIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_scope({ApiScope.admin})),
) -> ApiKeyCreateOut:
    """Create a key and return the raw value once."""
    if payload.user_id is not None and db.get(User, payload.user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("USER_NOT_FOUND", "User not found."),
        )

    raw, prefix, key_hash = gen_key()
    now = utcnow()
    expires_at = now + timedelta(days=payload.days_valid) if payload.days_valid else None

    row = ApiKey(
        name=payload.name,
        prefix=prefix,
        key_hash=key_hash,
        scope=payload.scope,
        user_id=payload.user_id,
        expires_at=expires_at,
        is_active=True,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("APIKEY_EXISTS", "Key name already exists."),
        ) from exc

    log_audit(
        db,
        actor=actor_from_principal(principal, fallback="admin"),
        action="CREATE_API_KEY",
        entity="ApiKey",
        entity_id=row.id,
        data={"name": row.name, "scope": row.scope.value, "user_id": row.user_id},
    )
    db.commit()

    return ApiKeyCreateOut(
        id=row.id,
        name=row.name,
        scope=row.scope,
        user_id=row.user_id,
        key=raw,
        expires_at=expires_at,
    )


@router.get(
    "/{api_key_id}",
    response_model=ApiKeyRead,
    dependencies=[Depends(require_scope({ApiScope.admin}))],
)
def get_apikey(api_key_id: int, db: Session = Depends(get_db)) -> ApiKey:
    row = db.get(ApiKey, api_key_id)
    if not row:
        raise _not_found()
    return row


@router.delete(
    "/{api_key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
def revoke_apikey(
    api_key_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_scope({ApiScope.admin})),
    cache: CacheService = Depends(get_cache_service),
) -> Response:
    row = db.get(ApiKey, api_key_id)
    if not row:
        raise _not_found()

    actor = actor_from_principal(principal, fallback="admin")
    if not row.is_active:
        log_audit(db, actor=actor, action="REVOKE_API_KEY_NOOP", entity="ApiKey", entity_id=api_key_id)
        db.commit()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    row.is_active = False
    log_audit(
        db,
        actor=actor,
        action="REVOKE_API_KEY",
        entity="ApiKey",
        entity_id=api_key_id,
        data={"name": row.name},
    )
    db.commit()
    cache.invalidate_session(row.key_hash)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
