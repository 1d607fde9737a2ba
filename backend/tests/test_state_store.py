"""
State store tests.

Focus:
- take() is single-use and atomic under concurrent replay
- absolute TTL per record kind (flow 10 min, handoff 5 min)
- unknown, expired and consumed tokens are indistinguishable (None)
- capacity bound evicts expired records first, then the oldest
"""

from __future__ import annotations

import threading

import pytest

from identity_access.domain import FlowKind, FlowState, OAuthProvider
from identity_access.stores import RecordKind, StateStore


def _flow() -> FlowState:
    return FlowState(provider=OAuthProvider.GOOGLE, flow_kind=FlowKind.SIGN_UP, callback_target="https://app/cb")


def test_put_generates_unpredictable_tokens(clock):
    store = StateStore()
    tokens = {store.put(RecordKind.FLOW, _flow()) for _ in range(50)}
    assert len(tokens) == 50
    # 32 random bytes, urlsafe base64 without padding
    assert all(len(t) >= 43 for t in tokens)


def test_take_returns_record_once(clock):
    store = StateStore()
    flow = _flow()
    token = store.put(RecordKind.FLOW, flow)

    rec = store.take(RecordKind.FLOW, token)
    assert rec is not None
    assert rec.payload == flow
    assert rec.token == token
    assert rec.expires_at == rec.created_at + 600

    assert store.take(RecordKind.FLOW, token) is None


@pytest.mark.parametrize("kind, ttl", [(RecordKind.FLOW, 600), (RecordKind.TWO_FACTOR, 300)])
def test_record_retrievable_just_before_ttl(clock, kind, ttl):
    store = StateStore()
    token = store.put(kind, "payload")
    clock.advance(ttl - 1)
    assert store.take(kind, token) is not None


@pytest.mark.parametrize("kind, ttl", [(RecordKind.FLOW, 600), (RecordKind.TWO_FACTOR, 300)])
def test_record_gone_just_after_ttl(clock, kind, ttl):
    store = StateStore()
    token = store.put(kind, "payload")
    clock.advance(ttl + 1)
    assert store.take(kind, token) is None
    # Expired take also removed the record
    assert len(store) == 0


def test_unknown_and_malformed_tokens_are_none(clock):
    store = StateStore()
    assert store.take(RecordKind.FLOW, "never-issued") is None
    assert store.take(RecordKind.FLOW, "") is None
    assert store.take(RecordKind.FLOW, None) is None  # type: ignore[arg-type]


def test_kind_mismatch_is_none_and_does_not_consume(clock):
    store = StateStore()
    token = store.put(RecordKind.TWO_FACTOR, "handoff")
    assert store.take(RecordKind.FLOW, token) is None
    assert store.take(RecordKind.TWO_FACTOR, token) is not None


def test_delete_removes_record(clock):
    store = StateStore()
    token = store.put(RecordKind.FLOW, _flow())
    store.delete(token)
    assert store.take(RecordKind.FLOW, token) is None
    store.delete("unknown")  # no error


def test_ttl_override(clock):
    store = StateStore(ttls={RecordKind.FLOW: 5})
    assert store.ttl_for(RecordKind.FLOW) == 5
    assert store.ttl_for(RecordKind.TWO_FACTOR) == 300
    token = store.put(RecordKind.FLOW, "x")
    clock.advance(6)
    assert store.take(RecordKind.FLOW, token) is None


def test_purge_expired_counts_removed(clock):
    store = StateStore()
    store.put(RecordKind.TWO_FACTOR, "short")
    store.put(RecordKind.FLOW, "long")
    clock.advance(301)
    assert store.purge_expired() == 1
    assert len(store) == 1


def test_capacity_evicts_expired_before_oldest(clock):
    store = StateStore(max_entries=2, shards=1, ttls={RecordKind.FLOW: 600, RecordKind.TWO_FACTOR: 10})
    stale = store.put(RecordKind.TWO_FACTOR, "stale")
    oldest = store.put(RecordKind.FLOW, "oldest")
    clock.advance(11)

    newest = store.put(RecordKind.FLOW, "newest")
    assert store.take(RecordKind.TWO_FACTOR, stale) is None
    assert store.take(RecordKind.FLOW, oldest) is not None
    assert store.take(RecordKind.FLOW, newest) is not None


def test_capacity_evicts_oldest_when_full(clock):
    store = StateStore(max_entries=2, shards=1)
    first = store.put(RecordKind.FLOW, 1)
    second = store.put(RecordKind.FLOW, 2)
    third = store.put(RecordKind.FLOW, 3)
    assert store.take(RecordKind.FLOW, first) is None
    assert store.take(RecordKind.FLOW, second) is not None
    assert store.take(RecordKind.FLOW, third) is not None


def test_invalid_sizes_rejected():
    with pytest.raises(ValueError):
        StateStore(max_entries=0)
    with pytest.raises(ValueError):
        StateStore(shards=0)


def test_concurrent_take_yields_single_winner():
    store = StateStore()
    token = store.put(RecordKind.FLOW, _flow())
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(store.take(RecordKind.FLOW, token))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r is not None) == 1
