import pytest
import redis

from app.core.errors import ConflictError, ServiceUnavailableError
from app.services.idempotency import (
    LOCK_PREFIX,
    InMemoryStore,
    RedisStore,
    acquire_lock,
    build_store,
    claim_idempotency_key,
    hold_lock,
    release_idempotency_key,
    release_lock,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_claim_is_exclusive_until_ttl():
    clock = FakeClock()
    store = InMemoryStore(clock=clock)

    assert claim_idempotency_key(store, "payos:webhook:1", 30) is True
    assert claim_idempotency_key(store, "payos:webhook:1", 30) is False
    clock.now += 31
    assert claim_idempotency_key(store, "payos:webhook:1", 30) is True


def test_release_allows_reclaim():
    store = InMemoryStore()
    claim_idempotency_key(store, "k")
    assert release_idempotency_key(store, "k") is True
    assert claim_idempotency_key(store, "k") is True


def test_claim_returns_none_when_store_fails(mocker):
    store = InMemoryStore()
    mocker.patch.object(store, "set_if_absent", side_effect=redis.TimeoutError("slow"))
    assert claim_idempotency_key(store, "k") is None


def test_lock_release_requires_token():
    store = InMemoryStore()
    token = acquire_lock(store, "booking-1", 30)

    assert token
    assert store.get(LOCK_PREFIX + "booking-1") == token
    assert acquire_lock(store, "booking-1", 30) is None
    assert release_lock(store, "booking-1", "someone-else") is False
    assert release_lock(store, "booking-1", token) is True
    assert acquire_lock(store, "booking-1", 30) is not None


def test_hold_lock_releases_on_error():
    store = InMemoryStore()
    with pytest.raises(RuntimeError):
        with hold_lock(store, "booking-2"):
            with pytest.raises(ConflictError):
                with hold_lock(store, "booking-2"):
                    pass
            raise RuntimeError("boom")
    assert store.get(LOCK_PREFIX + "booking-2") is None


def test_sweep_drops_expired_keys():
    clock = FakeClock()
    store = InMemoryStore(clock=clock)
    store.set_if_absent("a", "1", 5)
    store.set_if_absent("b", "1", 50)
    clock.now += 10
    assert store.sweep() == 1
    assert store.get("b") == "1"


def test_redis_store_uses_set_nx_ex(mocker):
    client = mocker.Mock()
    client.set.return_value = True
    script = mocker.Mock(return_value=1)
    client.register_script.return_value = script
    store = RedisStore(client)

    assert store.set_if_absent("k", "v", 30) is True
    client.set.assert_called_once_with("k", "v", nx=True, ex=30)
    assert store.delete_if_equals("k", "v") is True
    script.assert_called_once_with(keys=["k"], args=["v"])


def test_build_store_falls_back_when_redis_down(mocker):
    client = mocker.Mock()
    client.ping.side_effect = redis.ConnectionError("refused")
    mocker.patch("app.services.idempotency.redis.Redis.from_url", return_value=client)
    assert isinstance(build_store("redis://nowhere:6379/0"), InMemoryStore)


def test_lock_store_failure_is_not_reported_as_conflict(mocker):
    store = InMemoryStore()
    mocker.patch.object(store, "set_if_absent", side_effect=redis.ConnectionError("refused"))

    with pytest.raises(ServiceUnavailableError) as exc:
        with hold_lock(store, "booking-3"):
            pass
    assert exc.value.status_code == 503
