"""Tests for the Redis cache wrapper."""
from payledger.config import get_settings
from payledger.services.cache import CacheService, CacheTTLs, WebhookClaim


def test_json_values_round_trip_with_ttl(cache, redis_client):
    assert cache.set_json("user:1", {"id": 1, "name": "Asha"}, ttl=30)

    assert cache.get_json("user:1") == {"id": 1, "name": "Asha"}
    assert 0 < redis_client.ttl("user:1") <= 30
    assert cache.get_json("user:missing") is None


def test_undecodable_entry_is_discarded(cache, redis_client):
    redis_client.set("user:2", "{not json")

    assert cache.get_json("user:2") is None
    assert redis_client.exists("user:2") == 0


def test_set_if_absent_only_writes_once(cache):
    assert cache.set_if_absent("lock:a", {"v": 1}, ttl=10) is True
    assert cache.set_if_absent("lock:a", {"v": 2}, ttl=10) is False
    assert cache.get_json("lock:a") == {"v": 1}


def test_namespaces_use_their_own_ttls(redis_client):
    cache = CacheService(redis_client, CacheTTLs(user=11, session=22, payment_history=33))

    cache.set_user(1, {"id": 1})
    cache.set_session("abc", {"scope": "user"})
    cache.set_payment_history(1, [])

    assert 0 < redis_client.ttl("user:1") <= 11
    assert 0 < redis_client.ttl("session:abc") <= 22
    assert 0 < redis_client.ttl("payment_history:1") <= 33


def test_ttls_follow_settings():
    ttls = CacheTTLs.from_settings(get_settings())

    assert ttls.payment_history == get_settings().CACHE_TTL_PAYMENT_HISTORY_SECONDS
    assert ttls.webhook_claim == get_settings().CACHE_TTL_WEBHOOK_CLAIM_SECONDS


def test_clearing_payment_history_leaves_other_namespaces(cache):
    for user_id in range(3):
        cache.set_payment_history(user_id, [{"reference_id": f"PAY_{user_id}"}])
    cache.set_user(1, {"id": 1})

    removed = cache.clear_all_payment_history()

    assert removed == 3
    assert cache.get_payment_history(0) is None
    assert cache.get_user(1) == {"id": 1}


def test_invalidation_bumps_generation(cache):
    before = cache.payment_history_generation(5)
    cache.set_payment_history(5, [{"reference_id": "PAY_A"}], before)

    cache.invalidate_payment_history(5)

    assert cache.get_payment_history(5) is None
    assert cache.payment_history_generation(5) != before


def test_webhook_claim_lifecycle(cache, webhook_state):
    assert cache.claim_webhook_event("evt_1") is WebhookClaim.CLAIMED
    assert cache.claim_webhook_event("evt_1") is WebhookClaim.DUPLICATE
    assert webhook_state("evt_1") == "processing"

    cache.mark_webhook_event_processed("evt_1")
    assert webhook_state("evt_1") == "processed"
    assert cache.claim_webhook_event("evt_1") is WebhookClaim.DUPLICATE

    cache.release_webhook_event("evt_1")
    assert cache.claim_webhook_event("evt_1") is WebhookClaim.CLAIMED


def test_claim_expires_quickly_processed_marker_lasts(cache, redis_client):
    cache.claim_webhook_event("evt_ttl")
    assert redis_client.ttl("webhook_event:evt_ttl") <= cache.ttls.webhook_claim

    cache.mark_webhook_event_processed("evt_ttl")
    assert redis_client.ttl("webhook_event:evt_ttl") > cache.ttls.webhook_claim


def test_unreachable_redis_degrades_quietly(broken_cache):
    assert broken_cache.get_json("user:1") is None
    assert broken_cache.set_json("user:1", {}, ttl=5) is False
    assert broken_cache.set_if_absent("k", 1, ttl=5) is None
    assert broken_cache.exists("k") is False
    assert broken_cache.delete("k") is False
    assert broken_cache.scan_delete("user:") == 0
    assert broken_cache.ping() is False
    assert broken_cache.payment_history_generation(1) is None
    assert broken_cache.set_payment_history(1, [], "0") is False
    assert broken_cache.invalidate_payment_history(1) is False
    assert broken_cache.claim_webhook_event("evt") is WebhookClaim.UNAVAILABLE
    assert broken_cache.mark_webhook_event_processed("evt") is False
