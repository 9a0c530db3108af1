import uuid

import pytest

from clinic_scheduler.errors import IdempotencyKeyInFlight, IdempotencyKeyReused
from clinic_scheduler.idempotency import IdempotencyRegistry, issue_key


def test_issue_key_is_fresh_uuid4():
    keys = {issue_key() for _ in range(1000)}
    assert len(keys) == 1000
    assert all(uuid.UUID(k).version == 4 for k in keys)


def test_registry_replays_same_payload():
    registry = IdempotencyRegistry()
    payload = {"date": "2025-12-15", "time": "11:00", "patient_id": "p4"}
    assert registry.replay("k1", payload) is None

    registry.remember("k1", payload, "appt-1")
    assert registry.replay("k1", dict(reversed(list(payload.items())))) == "appt-1"
    assert len(registry) == 1


def test_registry_refuses_key_reuse_for_other_payload():
    registry = IdempotencyRegistry()
    registry.remember("k1", {"time": "11:00"}, "appt-1")
    with pytest.raises(IdempotencyKeyReused):
        registry.replay("k1", {"time": "11:30"})


def test_forget():
    registry = IdempotencyRegistry()
    registry.remember("k1", {}, "appt-1")
    registry.forget("k1")
    assert registry.replay("k1", {}) is None


def test_reserved_key_is_in_flight_until_settled():
    registry = IdempotencyRegistry()
    payload = {"time": "11:00"}
    assert registry.reserve("k1", payload) is None

    with pytest.raises(IdempotencyKeyInFlight):
        registry.reserve("k1", payload)
    with pytest.raises(IdempotencyKeyInFlight):
        registry.replay("k1", payload)
    with pytest.raises(IdempotencyKeyReused):
        registry.reserve("k1", {"time": "11:30"})

    registry.remember("k1", payload, "appt-1")
    assert registry.reserve("k1", payload) == "appt-1"


def test_failed_request_releases_its_key():
    registry = IdempotencyRegistry()
    registry.reserve("k1", {})
    registry.forget("k1")
    assert registry.reserve("k1", {}) is None


def test_registry_drops_oldest_settled_keys():
    registry = IdempotencyRegistry(max_keys=2)
    registry.reserve("pending", {})
    for n in range(3):
        registry.remember(f"k{n}", {}, n)

    assert len(registry) == 2
    assert registry.replay("k0", {}) is None
    assert registry.replay("k1", {}) is None
    assert registry.replay("k2", {}) == 2
    with pytest.raises(IdempotencyKeyInFlight):
        registry.replay("pending", {})
