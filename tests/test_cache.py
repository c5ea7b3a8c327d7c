import uuid

from support_agent.services.cache import CacheService


async def test_set_and_get_round_trip_json(cache, fake_redis):
    await cache.set("k", {"a": [1, 2]}, ttl_seconds=60)

    assert await cache.get("k") == {"a": [1, 2]}
    assert fake_redis.ttls["k"] == 60


async def test_missing_key_is_none(cache):
    assert await cache.get("nope") is None
    assert await cache.exists("nope") is False


async def test_delete(cache):
    await cache.set("k", 1)
    await cache.delete("k")

    assert await cache.exists("k") is False


async def test_malformed_value_is_a_miss(cache, fake_redis):
    fake_redis.store["k"] = "{not json"

    assert await cache.get("k") is None


async def test_increment_starts_window_on_first_hit(cache, fake_redis):
    assert await cache.increment("rl:1", 60) == 1
    assert await cache.increment("rl:1", 60) == 2
    assert fake_redis.ttls["rl:1"] == 60


async def test_unavailable_redis_degrades_to_miss(broken_cache):
    assert await broken_cache.connect() is False
    assert await broken_cache.health_check() is False
    assert await broken_cache.get("k") is None
    assert await broken_cache.exists("k") is False
    assert await broken_cache.increment("k", 60) is None
    await broken_cache.set("k", 1)
    await broken_cache.delete("k")


async def test_no_client_behaves_as_empty():
    cache = CacheService()

    assert await cache.connect() is False
    await cache.set("k", 1)
    assert await cache.get("k") is None


async def test_connect_and_close(cache):
    assert await cache.connect() is True
    assert await cache.health_check() is True

    await cache.close()

    assert cache.client is None
    assert await cache.health_check() is False


def test_faq_key_normalizes_message():
    assert CacheService.faq_cache_key("Reset  my\tPassword ") == CacheService.faq_cache_key("reset my password")
    assert CacheService.faq_cache_key("reset my password").startswith("faq:")
    assert CacheService.faq_cache_key("reset") != CacheService.faq_cache_key("refund")


async def test_faq_results_use_faq_ttl(cache, fake_redis):
    await cache.cache_faqs("Reset password", [{"question": "q"}], limit=5)

    assert await cache.get_cached_faqs("reset   password", limit=5) == [{"question": "q"}]
    assert fake_redis.ttls[CacheService.faq_cache_key("reset password")] == 3600


async def test_cached_faqs_are_sliced_to_smaller_limit(cache):
    faqs = [{"question": f"q{i}"} for i in range(5)]
    await cache.cache_faqs("billing", faqs, limit=5)

    assert await cache.get_cached_faqs("billing", limit=2) == faqs[:2]


async def test_truncated_entry_does_not_serve_larger_limit(cache):
    await cache.cache_faqs("billing", [{"question": "q0"}, {"question": "q1"}], limit=2)

    assert await cache.get_cached_faqs("billing", limit=5) is None


async def test_complete_entry_serves_larger_limit(cache):
    await cache.cache_faqs("billing", [{"question": "q0"}], limit=2)

    assert await cache.get_cached_faqs("billing", limit=5) == [{"question": "q0"}]


async def test_unrecognised_faq_entry_is_a_miss(cache, fake_redis):
    fake_redis.store[CacheService.faq_cache_key("billing")] = '[{"question": "q0"}]'

    assert await cache.get_cached_faqs("billing", limit=5) is None


async def test_conversation_context_lifecycle(cache, fake_redis):
    conversation_id = uuid.uuid4()
    key = f"messages:{conversation_id}"

    await cache.cache_conversation_context(conversation_id, [{"role": "user", "content": "hi"}])
    assert fake_redis.ttls[key] == 300
    assert await cache.get_cached_conversation_context(conversation_id) == [{"role": "user", "content": "hi"}]

    await cache.invalidate_conversation_cache(conversation_id)
    assert await cache.get_cached_conversation_context(conversation_id) is None
