"""FastAPI providers for the long-lived objects built in the application lifespan."""
from __future__ import annotations

from fastapi import Depends, Request

from payledger.services.cache import CacheService
from payledger.services.ledger import PaymentLedgerService
from payledger.services.users import UserProfileService


def get_cache_service(request: Request) -> CacheService:
    return request.app.state.cache


def get_ledger_service(request: Request) -> PaymentLedgerService:
    return request.app.state.ledger


def get_user_service(cache: CacheService = Depends(get_cache_service)) -> UserProfileService:
    return UserProfileService(cache)


__all__ = ["get_cache_service", "get_ledger_service", "get_user_service"]
