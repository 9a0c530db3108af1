"""Idempotency keys for write requests.

A key is issued once per booking *attempt* and sent with every retry of that
attempt, so whoever receives the write can tell a retry from a new request.
"""
from __future__ import annotations

import hashlib
import json
import threading
import uuid
from collections import OrderedDict
from typing import Any, Generic, Optional, TypeVar

from .errors import IdempotencyKeyInFlight, IdempotencyKeyReused

T = TypeVar("T")

HEADER = "X-Idempotency-Key"
DEFAULT_MAX_KEYS = 10_000

# placeholder result of a key whose request has not settled yet
_PENDING = object()


def issue_key() -> str:
    return str(uuid.uuid4())


def fingerprint(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdempotencyRegistry(Generic[T]):
    """Remembers the outcome of each keyed request.

    A request first ``reserve``s its key. Until it either ``remember``s a
    result or ``forget``s the key, the key is pending and any other request
    carrying it is refused with ``IdempotencyKeyInFlight``. Once settled,
    the same key with the same payload replays the stored result, and with
    a different payload raises ``IdempotencyKeyReused``.

    At most ``max_keys`` settled keys are kept; the oldest are dropped first.
    """

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS) -> None:
        self.max_keys = max_keys
        self._results: OrderedDict[str, tuple[str, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def _lookup(self, key: str, fp: str) -> Optional[T]:
        hit = self._results.get(key)
        if hit is None:
            return None
        stored_fp, result = hit
        if stored_fp != fp:
            raise IdempotencyKeyReused(f"Key {key} was already used for a different request")
        if result is _PENDING:
            raise IdempotencyKeyInFlight(f"A request with key {key} is still being processed")
        return result

    def replay(self, key: str, payload: dict[str, Any]) -> Optional[T]:
        with self._lock:
            return self._lookup(key, fingerprint(payload))

    def reserve(self, key: str, payload: dict[str, Any]) -> Optional[T]:
        """Return the stored result for ``key``, or mark it pending and return None."""
        fp = fingerprint(payload)
        with self._lock:
            result = self._lookup(key, fp)
            if result is None:
                self._results[key] = (fp, _PENDING)
            return result

    def remember(self, key: str, payload: dict[str, Any], result: T) -> None:
        with self._lock:
            self._results[key] = (fingerprint(payload), result)
            self._results.move_to_end(key)
            self._evict()

    def forget(self, key: str) -> None:
        with self._lock:
            self._results.pop(key, None)

    def _evict(self) -> None:
        excess = len(self._results) - self.max_keys
        if excess <= 0:
            return
        settled = [k for k, (_, r) in self._results.items() if r is not _PENDING]
        for key in settled[:excess]:
            del self._results[key]

    def __len__(self) -> int:
        return len(self._results)
