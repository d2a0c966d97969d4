"""Idempotency helpers."""
from typing import Any, Callable, Mapping, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

T = TypeVar("T")


def get_existing_by_key(
    db: Session,
    model: Type[T],
    key_value: str | None,
    *,
    key_field: str = "idempotency_key",
    scope: Mapping[str, Any] | None = None,
) -> Optional[T]:
    """Return the record stored under ``key_value`` (within ``scope``) if present."""

    if not key_value:
        return None
    if not hasattr(model, key_field):
        raise AttributeError(f"{model.__name__} has no field '{key_field}'")

    stmt = select(model).where(getattr(model, key_field) == key_value)
    for field_name, field_value in (scope or {}).items():
        stmt = stmt.where(getattr(model, field_name) == field_value)
    return db.scalars(stmt.limit(1)).first()


def insert_or_get_existing(
    db: Session,
    instance: T,
    fetch_existing: Callable[[], Optional[T]],
) -> tuple[Optional[T], bool]:
    """Insert ``instance`` inside a savepoint, relying on unique constraints.

    Returns ``(instance, True)`` when the row was written, or
    ``(existing, False)`` when a concurrent writer won the race and the unique
    constraint rejected this insert. The caller owns the outer commit.
    """

    try:
        with db.begin_nested():
            db.add(instance)
    except IntegrityError:
        # Race lost: the constraint guarantees the winner's row is readable now.
        return fetch_existing(), False
    return instance, True


__all__ = ["get_existing_by_key", "insert_or_get_existing"]
