import threading

import pytest
import redis
from redis.exceptions import LockError

from fieldflow.server.locks import LocalLockManager, RedisLockManager


@pytest.fixture
def redis_client():
    client = redis.Redis()
    try:
        client.ping()
    except redis.exceptions.ConnectionError:
        pytest.skip("Redis server not available")
    yield client
    for key in client.scan_iter("fieldflow:test-lock:*"):
        client.delete(key)


def test_local_lock_times_out_while_held():
    locks = LocalLockManager()
    token = locks.acquire("job-1", timeout=1)
    assert token is not None

    assert locks.acquire("job-1", timeout=0.05) is None
    assert locks.acquire("job-2", timeout=0.05) is not None

    locks.release("job-1", token)
    assert locks.acquire("job-1", timeout=0.05) is not None


def test_local_lock_hold_yields_acquired_flag():
    locks = LocalLockManager()
    outcome = []

    with locks.hold("job-1", timeout=1) as acquired:
        assert acquired is True

        def contender():
            with locks.hold("job-1", timeout=0.05) as got_it:
                outcome.append(got_it)

        thread = threading.Thread(target=contender)
        thread.start()
        thread.join()

    assert outcome == [False]
    with locks.hold("job-1", timeout=0.05) as acquired:
        assert acquired is True


def test_local_lock_forgets_released_keys():
    locks = LocalLockManager()
    for _ in range(3):
        with locks.hold("job-1", timeout=1):
            pass
    assert locks._locks == {}


def test_local_lock_serializes_critical_sections():
    locks = LocalLockManager()
    counter = {"value": 0}

    def bump():
        for _ in range(200):
            with locks.hold("job-1", timeout=5) as acquired:
                assert acquired
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter["value"] == 800


class _ExpiredLock:
    def release(self):
        raise LockError("Cannot release an unlocked lock")


def test_redis_lock_release_tolerates_expired_lease():
    locks = RedisLockManager(redis_client=None)
    locks.release("job-1", _ExpiredLock())


def test_redis_lock_excludes_second_holder(redis_client):
    locks = RedisLockManager(redis_client, prefix="fieldflow:test-lock:", lease_seconds=5)

    token = locks.acquire("job-1", timeout=1)
    assert token is not None
    assert locks.acquire("job-1", timeout=0.1) is None

    locks.release("job-1", token)
    with locks.hold("job-1", timeout=1) as acquired:
        assert acquired is True
