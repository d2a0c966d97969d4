"""User profile reads and updates with a read-through cache."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from payledger.models.user import User
from payledger.services.cache import CacheService
from payledger.services.results import ErrorKind, Result
from payledger.utils.audit import log_audit

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("email", "full_name", "is_active")


def project_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "full_name": user.full_name,
        "is_active": user.is_active,
    }


class UserProfileService:
    """Cache-first profile lookups; every write drops the cached copy."""

    def __init__(self, cache: CacheService) -> None:
        self.cache = cache

    def create_user(self, db: Session, data: dict[str, Any], *, actor: str) -> Result[dict[str, Any]]:
        user = User(**data)
        db.add(user)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            return Result.failure(ErrorKind.CONFLICT, "USER_EXISTS", "Username or email already in use.")

        log_audit(
            db,
            actor=actor,
            action="CREATE_USER",
            entity="User",
            entity_id=user.id,
            data={"username": user.username, "email": user.email},
        )
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to create user", extra={"username": data.get("username"), "error": str(exc)})
            return Result.failure(ErrorKind.PERSISTENCE, "USER_CREATE_FAILED", "Could not create user.")
        return Result.success(project_user(user))

    def get_profile(self, db: Session, user_id: int) -> Result[dict[str, Any]]:
        cached = self.cache.get_user(user_id)
        if cached is not None:
            return Result.success(cached)

        user = db.get(User, user_id)
        if user is None:
            return Result.failure(ErrorKind.NOT_FOUND, "USER_NOT_FOUND", "User not found.")
        profile = project_user(user)
        self.cache.set_user(user_id, profile)
        return Result.success(profile)

    def update_profile(
        self, db: Session, user_id: int, changes: dict[str, Any], *, actor: str
    ) -> Result[dict[str, Any]]:
        user = db.get(User, user_id)
        if user is None:
            return Result.failure(ErrorKind.NOT_FOUND, "USER_NOT_FOUND", "User not found.")

        applied = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS}
        for key, value in applied.items():
            setattr(user, key, value)
        log_audit(
            db,
            actor=actor,
            action="UPDATE_USER",
            entity="User",
            entity_id=user.id,
            data={"fields": sorted(applied)},
        )
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return Result.failure(ErrorKind.CONFLICT, "USER_EXISTS", "Username or email already in use.")
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to update user", extra={"user_id": user_id, "error": str(exc)})
            return Result.failure(ErrorKind.PERSISTENCE, "USER_UPDATE_FAILED", "Could not update user.")

        self.cache.invalidate_user(user_id)
        return Result.success(project_user(user))


__all__ = ["UserProfileService", "project_user"]
