# tests/test_session_store.py
from unittest.mock import MagicMock

from tenderly.session_store import RedisSessionStore


def test_values_expire_with_ttl(store, clock):
    store.set("draft:abc", {"sessionId": "abc"}, 900)
    assert store.get("draft:abc") == {"sessionId": "abc"}

    clock.advance(seconds=899)
    assert store.get("draft:abc") is not None

    clock.advance(seconds=1)
    assert store.get("draft:abc") is None


def test_delete(store):
    store.set("k", "v", 60)
    store.delete("k")
    store.delete("missing")
    assert store.get("k") is None


def test_lock_is_exclusive_until_released(store):
    token = store.acquire_lock("payment-lock:s1", 30)
    assert token
    assert store.acquire_lock("payment-lock:s1", 30) is None
    assert store.acquire_lock("payment-lock:s2", 30)

    assert store.release_lock("payment-lock:s1", token) is True
    assert store.acquire_lock("payment-lock:s1", 30)


def test_abandoned_lock_expires(store, clock):
    assert store.acquire_lock("payment-lock:s1", 30)
    clock.advance(seconds=31)
    assert store.acquire_lock("payment-lock:s1", 30)


def test_stale_holder_cannot_release_a_newer_lock(store, clock):
    stale = store.acquire_lock("payment-lock:s1", 30)
    clock.advance(seconds=31)
    current = store.acquire_lock("payment-lock:s1", 30)
    assert current and current != stale

    assert store.release_lock("payment-lock:s1", stale) is False
    assert store.acquire_lock("payment-lock:s1", 30) is None

    assert store.release_lock("payment-lock:s1", current) is True
    assert store.acquire_lock("payment-lock:s1", 30)


def test_lock_does_not_clobber_data_key(store):
    store.set("payment-lock:s1", {"x": 1}, 60)
    assert store.acquire_lock("payment-lock:s1", 30)
    assert store.get("payment-lock:s1") == {"x": 1}


def test_redis_store_uses_prefix_and_set_nx():
    client = MagicMock()
    client.set.return_value = True
    client.get.return_value = '{"a": 1}'
    release = client.register_script.return_value
    release.return_value = 1
    store = RedisSessionStore(client, key_prefix="tenderly:")

    store.set("draft:s1", {"a": 1}, 900)
    client.setex.assert_called_once_with("tenderly:draft:s1", 900, '{"a": 1}')

    assert store.get("draft:s1") == {"a": 1}
    client.get.assert_called_with("tenderly:draft:s1")

    token = store.acquire_lock("payment-lock:s1", 30)
    client.set.assert_called_once_with("tenderly:lock:payment-lock:s1", token, nx=True, ex=30)

    assert store.release_lock("payment-lock:s1", token) is True
    release.assert_called_once_with(keys=["tenderly:lock:payment-lock:s1"], args=[token])
    client.delete.assert_not_called()


def test_redis_lock_taken_elsewhere():
    client = MagicMock()
    client.set.return_value = None
    client.register_script.return_value.return_value = 0
    store = RedisSessionStore(client)

    assert store.acquire_lock("payment-lock:s1", 30) is None
    assert store.release_lock("payment-lock:s1", "someone-elses-token") is False


def test_redis_store_drops_corrupt_values():
    client = MagicMock()
    client.get.return_value = "not json"
    assert RedisSessionStore(client).get("x") is None
