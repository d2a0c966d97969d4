"""API routers for the payment ledger."""
from fastapi import APIRouter

from . import apikeys, payments, users, webhooks


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(webhooks.router)
    api_router.include_router(payments.router)
    api_router.include_router(users.router)
    api_router.include_router(apikeys.router)
    return api_router
