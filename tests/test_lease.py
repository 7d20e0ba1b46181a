"""Tests for the pairing lease: Redis SET NX with owner check, in-memory fallback."""
from unittest.mock import MagicMock

import redis

from apps.connections.lease import PairingLease


def test_memory_lease_single_owner():
    lease = PairingLease(use_redis=False)
    assert lease.acquire("c1", "w1")
    assert lease.acquire("c1", "w1")  # re-entrant for the same owner
    assert not lease.acquire("c1", "w2")
    lease.release("c1", "w2")  # not the owner: no effect
    assert not lease.acquire("c1", "w2")
    lease.release("c1", "w1")
    assert lease.acquire("c1", "w2")


def test_memory_lease_expires():
    lease = PairingLease(use_redis=False, ttl_seconds=0.0)
    assert lease.acquire("c1", "w1")
    assert lease.acquire("c1", "w2")


def test_redis_lease_uses_set_nx_with_ttl():
    r = MagicMock()
    r.set.return_value = True
    lease = PairingLease(redis_client=r, ttl_seconds=150)
    assert lease.acquire("c1", "w1")
    r.set.assert_called_once_with("wa:pairing:c1", "w1", nx=True, ex=150)


def test_redis_lease_held_by_other_owner():
    r = MagicMock()
    r.set.return_value = None
    r.get.return_value = b"w1"
    lease = PairingLease(redis_client=r)
    assert not lease.acquire("c1", "w2")
    assert lease.acquire("c1", "w1")


def test_redis_release_is_compare_and_delete():
    r = MagicMock()
    lease = PairingLease(redis_client=r)
    lease.release("c1", "w1")
    args = r.eval.call_args[0]
    assert args[1:] == (1, "wa:pairing:c1", "w1")


def test_redis_error_falls_back_to_memory():
    r = MagicMock()
    r.set.side_effect = redis.ConnectionError("down")
    lease = PairingLease(redis_client=r)
    assert lease.acquire("c1", "w1")
    assert not lease.acquire("c1", "w2")
