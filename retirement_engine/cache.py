"""Result cache keyed by a content hash of the simulation inputs."""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import CacheInconsistencyError
from .params import SimulationParams

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0


def canonical(value: Any) -> Any:
    """JSON-ready form of ``value`` with volatile dataclass fields removed."""

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: canonical(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if not f.metadata.get("volatile")
        }
    if isinstance(value, (list, tuple)):
        return [canonical(v) for v in value]
    if isinstance(value, dict):
        return {str(k): canonical(v) for k, v in value.items()}
    return value


def make_key(params: SimulationParams, iterations: int, seed_policy: str = "fixed") -> str:
    """SHA-256 over the semantically relevant inputs of a run."""

    payload = {"params": canonical(params), "iterations": iterations, "seed_policy": seed_policy}
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode()).hexdigest()


@dataclass
class _Entry:
    value: Any
    stored_at: float
    household_id: str


class ResultCache:
    """
    Single in-memory cache of simulation results.

    At most one computation runs per key: concurrent callers for the same key
    wait on the first caller's future.  A finished computation is stored only
    if its household has not been invalidated and has not requested a
    different key in the meantime.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}
        self._in_flight: Dict[str, Future] = {}
        self._generation: Dict[str, int] = {}
        self._latest_key: Dict[str, str] = {}
        self._stored_key: Dict[str, str] = {}
        self._running: Dict[str, int] = {}  # household -> computations in flight

    make_key = staticmethod(make_key)

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _Entry, now: float) -> bool:
        return now - entry.stored_at > self.ttl_seconds

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key)
        if self._stored_key.get(entry.household_id) == key:
            del self._stored_key[entry.household_id]

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            self._drop(key)
            return None
        return entry

    def _sweep(self) -> None:
        """Drop expired entries and bookkeeping for households with nothing left."""

        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in expired:
            self._drop(key)
        active = {e.household_id for e in self._entries.values()} | set(self._running)
        for household in [h for h in self._generation if h not in active]:
            del self._generation[household]
        for household in [h for h in self._latest_key if h not in active]:
            del self._latest_key[household]
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))

    def _finish(self, key: str, household_id: str) -> None:
        del self._in_flight[key]
        if household_id:
            self._running[household_id] -= 1
            if not self._running[household_id]:
                del self._running[household_id]

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
        if entry is None:
            logger.debug("Cache miss %s", key[:12])
            return None
        logger.debug("Cache hit %s", key[:12])
        return entry.value

    def get_verified(self, household_id: str, expected_hash: str) -> Optional[Any]:
        """
        Latest stored result for a household, checked against ``expected_hash``.

        Returns ``None`` when nothing is stored and raises
        :class:`CacheInconsistencyError` when the stored result was computed
        from different inputs.
        """

        with self._lock:
            stored = self._stored_key.get(household_id)
            entry = self._live(stored) if stored is not None else None
        if entry is None:
            return None
        if stored != expected_hash:
            raise CacheInconsistencyError(expected_hash, stored)
        return entry.value

    def put(self, key: str, value: Any, household_id: str = "") -> None:
        with self._lock:
            self._store(key, value, household_id)

    def _store(self, key: str, value: Any, household_id: str) -> None:
        self._entries[key] = _Entry(value, self._clock(), household_id)
        if household_id:
            self._stored_key[household_id] = key
        self._sweep()

    def get_or_compute(self, key: str, compute: Callable[[], Any], household_id: str = "") -> Any:
        """Return the cached value for ``key``, computing it at most once."""

        with self._lock:
            entry = self._live(key)
            if entry is not None:
                logger.debug("Cache hit %s", key[:12])
                return entry.value
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future
                if household_id:
                    self._running[household_id] = self._running.get(household_id, 0) + 1
            generation = self._generation.get(household_id, 0)
            if household_id:
                self._latest_key[household_id] = key

        if not owner:
            logger.debug("Waiting on in-flight computation %s", key[:12])
            return future.result()

        logger.debug("Cache miss %s, computing", key[:12])
        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                self._finish(key, household_id)
            future.set_exception(exc)
            raise

        with self._lock:
            self._finish(key, household_id)
            stale = household_id and (
                self._generation.get(household_id, 0) != generation
                or self._latest_key.get(household_id) != key
            )
            if stale:
                logger.warning(
                    "Discarding stale result %s for household %s", key[:12], household_id
                )
            else:
                self._store(key, value, household_id)
        future.set_result(value)
        return value

    def invalidate(self, household_id: str) -> int:
        """Drop a household's entries; computations already running will not be stored."""

        with self._lock:
            keys = [k for k, e in self._entries.items() if e.household_id == household_id]
            for key in keys:
                del self._entries[key]
            self._generation[household_id] = self._generation.get(household_id, 0) + 1
            self._latest_key.pop(household_id, None)
            self._stored_key.pop(household_id, None)
        logger.debug("Invalidated %d cache entries for household %s", len(keys), household_id)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._stored_key.clear()
            self._generation = {h: g for h, g in self._generation.items() if h in self._running}
            self._latest_key = {h: k for h, k in self._latest_key.items() if h in self._running}
