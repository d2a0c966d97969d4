"""User endpoints."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from payledger.db import get_db
from payledger.dependencies import get_user_service
from payledger.models.api_key import ApiScope
from payledger.schemas.user import UserCreate, UserRead, UserUpdate
from payledger.security import Principal, ensure_self_or_staff, require_api_key, require_scope
from payledger.services.users import UserProfileService
from payledger.utils.audit import actor_from_principal
from payledger.utils.errors import raise_for_error

router = APIRouter(prefix="/users", tags=["users"])


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_scope({ApiScope.admin})),
    users: UserProfileService = Depends(get_user_service),
) -> dict:
    """Create a new user."""

    result = users.create_user(db, payload.model_dump(), actor=actor_from_principal(principal))
    if not result.ok:
        raise_for_error(result.error)
    return result.value


@router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_api_key),
    users: UserProfileService = Depends(get_user_service),
) -> dict:
    """Retrieve a user profile, cache first."""

    ensure_self_or_staff(principal, user_id)
    result = users.get_profile(db, user_id)
    if not result.ok:
        raise_for_error(result.error)
    return result.value


@router.patch("/{user_id}", response_model=UserRead)
def update_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_api_key),
    users: UserProfileService = Depends(get_user_service),
) -> dict:
    ensure_self_or_staff(principal, user_id, staff={ApiScope.admin})
    result = users.update_profile(
        db, user_id, payload.model_dump(exclude_unset=True), actor=actor_from_principal(principal)
    )
    if not result.ok:
        raise_for_error(result.error)
    return result.value
