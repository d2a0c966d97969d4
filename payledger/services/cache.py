"""Redis-backed cache with best-effort semantics.

Every call swallows Redis failures after logging them: the cache is an
accelerator and a dedup gate, never the source of truth. Callers fall back to
the database (reads) or proceed without caching (writes/invalidations).
"""
from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any

import redis

from payledger.config import Settings
from payledger.utils.time import utcnow

logger = logging.getLogger(__name__)

SCAN_BATCH_SIZE = 100


class CacheNamespace(str, enum.Enum):
    """Isolated key prefixes, each with its own TTL."""

    USER = "user:"
    SESSION = "session:"
    PAYMENT_HISTORY = "payment_history:"
    WEBHOOK_EVENT = "webhook_event:"


class WebhookClaim(str, enum.Enum):
    """Outcome of trying to claim a webhook event for processing."""

    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class CacheTTLs:
    user: int = 3600
    session: int = 86400
    payment_history: int = 7200
    webhook_event: int = 86400
    webhook_claim: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheTTLs":
        return cls(
            user=settings.CACHE_TTL_USER_SECONDS,
            session=settings.CACHE_TTL_SESSION_SECONDS,
            payment_history=settings.CACHE_TTL_PAYMENT_HISTORY_SECONDS,
            webhook_event=settings.CACHE_TTL_WEBHOOK_EVENT_SECONDS,
            webhook_claim=settings.CACHE_TTL_WEBHOOK_CLAIM_SECONDS,
        )


def create_redis_client(settings: Settings) -> redis.Redis:
    """Build a Redis client with bounded socket timeouts."""

    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
        health_check_interval=30,
    )


class CacheService:
    """Generic key-value operations plus namespace helpers."""

    def __init__(self, client: redis.Redis, ttls: CacheTTLs | None = None) -> None:
        self.client = client
        self.ttls = ttls or CacheTTLs()

    # ------------------------------------------------------------------
    # Generic contract
    # ------------------------------------------------------------------
    def get_json(self, key: str) -> Any | None:
        try:
            cached = self.client.get(key)
        except redis.RedisError as exc:
            logger.error("Cache get failed", extra={"key": key, "error": str(exc)})
            return None
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", extra={"key": key})
            self.delete(key)
            return None

    def set_json(self, key: str, value: Any, ttl: int) -> bool:
        try:
            self.client.set(key, json.dumps(value, default=str), ex=ttl)
        except redis.RedisError as exc:
            logger.error("Cache set failed", extra={"key": key, "error": str(exc)})
            return False
        return True

    def set_if_absent(self, key: str, value: Any, ttl: int) -> bool | None:
        """Atomically store ``value`` unless ``key`` exists.

        Returns ``True`` when stored, ``False`` when the key already existed and
        ``None`` when Redis could not be reached.
        """

        try:
            stored = self.client.set(key, json.dumps(value, default=str), ex=ttl, nx=True)
        except redis.RedisError as exc:
            logger.error("Cache set-if-absent failed", extra={"key": key, "error": str(exc)})
            return None
        return bool(stored)

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as exc:
            logger.error("Cache exists check failed", extra={"key": key, "error": str(exc)})
            return False

    def delete(self, key: str) -> bool:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            logger.error("Cache delete failed", extra={"key": key, "error": str(exc)})
            return False
        return True

    def scan_delete(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; returns the number removed."""

        removed = 0
        batch: list[str] = []
        try:
            for key in self.client.scan_iter(match=f"{prefix}*", count=SCAN_BATCH_SIZE):
                batch.append(key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    removed += self.client.delete(*batch)
                    batch = []
            if batch:
                removed += self.client.delete(*batch)
        except redis.RedisError as exc:
            logger.error("Cache bulk delete failed", extra={"prefix": prefix, "error": str(exc)})
            return removed
        logger.info("Cache entries cleared", extra={"prefix": prefix, "count": removed})
        return removed

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            logger.warning("Cache ping failed", extra={"error": str(exc)})
            return False

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError as exc:
            logger.warning("Cache close failed", extra={"error": str(exc)})

    # ------------------------------------------------------------------
    # User profile
    # ------------------------------------------------------------------
    @staticmethod
    def user_key(user_id: int | str) -> str:
        return f"{CacheNamespace.USER.value}{user_id}"

    def get_user(self, user_id: int | str) -> dict | None:
        return self.get_json(self.user_key(user_id))

    def set_user(self, user_id: int | str, profile: dict) -> bool:
        return self.set_json(self.user_key(user_id), profile, self.ttls.user)

    def invalidate_user(self, user_id: int | str) -> bool:
        return self.delete(self.user_key(user_id))

    # ------------------------------------------------------------------
    # API key sessions
    # ------------------------------------------------------------------
    @staticmethod
    def session_key(key_hash: str) -> str:
        return f"{CacheNamespace.SESSION.value}{key_hash}"

    def get_session(self, key_hash: str) -> dict | None:
        return self.get_json(self.session_key(key_hash))

    def set_session(self, key_hash: str, session: dict) -> bool:
        return self.set_json(self.session_key(key_hash), session, self.ttls.session)

    def invalidate_session(self, key_hash: str) -> bool:
        return self.delete(self.session_key(key_hash))

    # ------------------------------------------------------------------
    # Payment history
    # ------------------------------------------------------------------
    @staticmethod
    def payment_history_key(user_id: int | str) -> str:
        return f"{CacheNamespace.PAYMENT_HISTORY.value}{user_id}"

    @classmethod
    def payment_history_generation_key(cls, user_id: int | str) -> str:
        return f"{cls.payment_history_key(user_id)}:generation"

    def get_payment_history(self, user_id: int | str) -> list[dict] | None:
        cached = self.get_json(self.payment_history_key(user_id))
        if cached is not None and not isinstance(cached, list):
            return None
        return cached

    def payment_history_generation(self, user_id: int | str) -> str | None:
        """Return the invalidation counter for ``user_id`` or ``None`` if Redis is down.

        Readers capture it before querying the database and hand it back to
        :meth:`set_payment_history`, which refuses to store when an
        invalidation happened in between.
        """

        try:
            return self.client.get(self.payment_history_generation_key(user_id)) or "0"
        except redis.RedisError as exc:
            logger.error("Cache generation read failed", extra={"user_id": user_id, "error": str(exc)})
            return None

    def set_payment_history(
        self, user_id: int | str, payments: list[dict], generation: str | None = None
    ) -> bool:
        key = self.payment_history_key(user_id)
        if generation is None:
            return self.set_json(key, payments, self.ttls.payment_history)

        generation_key = self.payment_history_generation_key(user_id)
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(generation_key)
                current = pipe.get(generation_key) or "0"
                if current != generation:
                    pipe.unwatch()
                    logger.info("Skipping stale payment history write", extra={"user_id": user_id})
                    return False
                pipe.multi()
                pipe.set(key, json.dumps(payments, default=str), ex=self.ttls.payment_history)
                pipe.execute()
        except redis.WatchError:
            logger.info("Payment history invalidated during write", extra={"user_id": user_id})
            return False
        except redis.RedisError as exc:
            logger.error("Cache set failed", extra={"key": key, "error": str(exc)})
            return False
        return True

    def invalidate_payment_history(self, user_id: int | str) -> bool:
        key = self.payment_history_key(user_id)
        generation_key = self.payment_history_generation_key(user_id)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.incr(generation_key)
            pipe.expire(generation_key, self.ttls.payment_history)
            pipe.delete(key)
            pipe.execute()
        except redis.RedisError as exc:
            logger.error("Cache invalidation failed", extra={"key": key, "error": str(exc)})
            return False
        return True

    def clear_all_payment_history(self) -> int:
        return self.scan_delete(CacheNamespace.PAYMENT_HISTORY.value)

    # ------------------------------------------------------------------
    # Webhook event dedup
    # ------------------------------------------------------------------
    @staticmethod
    def webhook_event_key(event_id: str) -> str:
        return f"{CacheNamespace.WEBHOOK_EVENT.value}{event_id}"

    def claim_webhook_event(self, event_id: str) -> WebhookClaim:
        """Take the in-flight marker for ``event_id`` if nobody holds it."""

        stored = self.set_if_absent(
            self.webhook_event_key(event_id),
            {"state": "processing", "claimed_at": utcnow().isoformat()},
            self.ttls.webhook_claim,
        )
        if stored is None:
            return WebhookClaim.UNAVAILABLE
        if stored:
            return WebhookClaim.CLAIMED
        logger.warning("Duplicate webhook event detected", extra={"event_id": event_id})
        return WebhookClaim.DUPLICATE

    def mark_webhook_event_processed(self, event_id: str) -> bool:
        stored = self.set_json(
            self.webhook_event_key(event_id),
            {"state": "processed", "processed_at": utcnow().isoformat()},
            self.ttls.webhook_event,
        )
        if stored:
            logger.info("Webhook event marked as processed", extra={"event_id": event_id})
        return stored

    def release_webhook_event(self, event_id: str) -> bool:
        return self.delete(self.webhook_event_key(event_id))


__all__ = [
    "CacheNamespace",
    "CacheService",
    "CacheTTLs",
    "WebhookClaim",
    "create_redis_client",
]
