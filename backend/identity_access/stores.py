"""
In-memory state store for OAuth flow state and two-factor handoff records.

Why: Keep server-side flow context opaque to the client. The browser only ever
sees a random token; everything the callback needs (provider, flow kind,
callback target, target account) stays here.

Security:
- Tokens are generated by the store (256 bits of entropy); callers never pick
  them.
- `take` is an atomic read-and-delete. A replayed, expired, forged or
  never-issued token all look the same to the caller: `None`.
- Every record has an absolute TTL. Reads never extend it.

Records are ephemeral by design and do not survive a process restart. The
store is split into independently locked shards so that flows with different
tokens do not contend; the capacity bound evicts expired records first, then
the oldest ones.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import secrets
import threading
import time


def _now() -> float:
    return time.time()


class RecordKind(str, Enum):
    FLOW = "flow"
    TWO_FACTOR = "two_factor"


DEFAULT_TTLS: Dict[RecordKind, int] = {
    RecordKind.FLOW: 600,  # 10 minutes
    RecordKind.TWO_FACTOR: 300,  # 5 minutes
}


@dataclass(frozen=True)
class StateRecord:
    token: str
    kind: RecordKind
    payload: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


class _Shard:
    def __init__(self, capacity: int):
        self.capacity = capacity
        self.lock = threading.Lock()
        self.records: "OrderedDict[str, StateRecord]" = OrderedDict()

    def purge_expired(self, now: float) -> int:
        expired = [token for token, rec in self.records.items() if rec.is_expired(now)]
        for token in expired:
            del self.records[token]
        return len(expired)

    def make_room(self, now: float) -> None:
        if len(self.records) < self.capacity:
            return
        self.purge_expired(now)
        while len(self.records) >= self.capacity:
            self.records.popitem(last=False)


class StateStore:
    """Time-boxed, single-use key/value records keyed by opaque tokens.

    Parameters
    ----------
    max_entries:
        Upper bound on stored records across all shards. A liveness safeguard
        only; correctness never depends on it.
    shards:
        Number of independently locked partitions.
    ttls:
        Optional per-kind TTL overrides in seconds.
    """

    def __init__(
        self,
        *,
        max_entries: int = 10_000,
        shards: int = 16,
        ttls: Optional[Mapping[RecordKind, int]] = None,
    ):
        if max_entries < 1 or shards < 1:
            raise ValueError("max_entries and shards must be positive")
        shards = min(shards, max_entries)
        per_shard = max(1, max_entries // shards)
        self._shards = [_Shard(per_shard) for _ in range(shards)]
        self._ttls: Dict[RecordKind, int] = dict(DEFAULT_TTLS)
        if ttls:
            self._ttls.update(ttls)

    def _shard(self, token: str) -> _Shard:
        return self._shards[hash(token) % len(self._shards)]

    def ttl_for(self, kind: RecordKind) -> int:
        return self._ttls[kind]

    def put(self, kind: RecordKind, payload: Any) -> str:
        """Store `payload` under a freshly generated token and return the token."""
        token = secrets.token_urlsafe(32)
        now = _now()
        rec = StateRecord(
            token=token,
            kind=kind,
            payload=payload,
            created_at=now,
            expires_at=now + self._ttls[kind],
        )
        shard = self._shard(token)
        with shard.lock:
            shard.make_room(now)
            shard.records[token] = rec
        return token

    def take(self, kind: RecordKind, token: str) -> Optional[StateRecord]:
        """Atomically read and delete a record.

        Returns None when the token never existed, has expired, was already
        consumed, or belongs to another record kind.
        """
        if not isinstance(token, str) or not token:
            return None
        shard = self._shard(token)
        with shard.lock:
            rec = shard.records.get(token)
            if rec is None or rec.kind is not kind:
                return None
            del shard.records[token]
        if rec.is_expired(_now()):
            return None
        return rec

    def delete(self, token: str) -> None:
        if not isinstance(token, str) or not token:
            return
        shard = self._shard(token)
        with shard.lock:
            shard.records.pop(token, None)

    def purge_expired(self) -> int:
        """Drop expired records from every shard; returns how many were removed."""
        now = _now()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                removed += shard.purge_expired(now)
        return removed

    def __len__(self) -> int:
        now = _now()
        count = 0
        for shard in self._shards:
            with shard.lock:
                count += sum(1 for rec in shard.records.values() if not rec.is_expired(now))
        return count


__all__ = ["RecordKind", "StateRecord", "StateStore", "DEFAULT_TTLS"]
