"""Multi-tier cache orchestrator: promotion and write propagation over ordered tiers."""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from modcore.cache.base import Cache, CacheConfig, CacheStats, TierLevel
from modcore.core.exceptions import (
    BufferFullError,
    CacheClosedError,
    CacheError,
    KeyNotFoundError,
)

logger = logging.getLogger("modcore.cache")


@dataclass
class MultiTierConfig(CacheConfig):
    """Orchestrator policy.

    When both ``write_through`` and ``write_back`` are set, write-through wins.
    With neither set, writes only reach tier 0. ``workers <= 0`` runs
    background jobs inline on the calling thread.
    """
    promote_l1: bool = True
    write_through: bool = True
    write_back: bool = False
    queue_size: int = 1024
    workers: int = 1


class MultiTierCache(Cache):
    """Composes cache tiers, fastest first, behind the single Cache contract.

    Tier 0 is the critical tier: its failures are surfaced to the caller.
    Failures in slower tiers during writes are logged and counted. Counters
    are the exception: they live in the slowest tier, which is the critical
    one for ``increment``. Promotion and write-back run on a bounded job
    queue; a full queue drops the job rather than blocking the request.
    """

    def __init__(self, config: Optional[MultiTierConfig] = None):
        self.config = config or MultiTierConfig()
        self._tiers: List[Tuple[TierLevel, Cache]] = []
        self._lock = threading.RLock()
        self._closed = False
        self._stats = CacheStats()
        self._stats_lock = threading.Lock()

        # key -> token of the one promotion still allowed to write it
        self._promotions: Dict[str, object] = {}
        self._promotion_lock = threading.Lock()

        self._jobs: "queue.Queue[Optional[Tuple[str, Callable, tuple]]]" = queue.Queue(
            maxsize=max(0, self.config.queue_size)
        )
        self._pending = 0
        self._idle = threading.Condition()
        self._workers: List[threading.Thread] = []
        for i in range(max(0, self.config.workers)):
            worker = threading.Thread(
                target=self._work,
                name=f"modcore-cache-worker-{i}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)

    # ---- tier management ----

    def add_tier(self, cache: Cache, level: TierLevel) -> None:
        """Register a tier; tiers stay sorted by level (L1 first)."""
        with self._lock:
            if self._closed:
                raise CacheClosedError(op="add_tier")
            self._tiers.append((TierLevel(level), cache))
            self._tiers.sort(key=lambda pair: pair[0])

    @property
    def tiers(self) -> List[Cache]:
        with self._lock:
            return [cache for _, cache in self._tiers]

    def _snapshot(self, op: str) -> List[Cache]:
        # Copy under the lock so no lock is held during tier I/O
        with self._lock:
            if self._closed:
                raise CacheClosedError(op=op)
            if not self._tiers:
                raise CacheError("no cache tiers configured", op=op)
            return [cache for _, cache in self._tiers]

    # ---- helpers ----

    def _count(self, field: str, amount: int = 1) -> None:
        with self._stats_lock:
            setattr(self._stats, field, getattr(self._stats, field) + amount)

    def _resolve_ttl(self, ttl: float) -> float:
        return self.config.default_ttl if ttl == 0 else ttl

    def _secondary(self, op: str, key: Optional[str], fn: Callable, *args) -> None:
        """Run a write against a non-critical tier; failures are logged, not raised."""
        try:
            fn(*args)
        except CacheError as exc:
            self._count("errors")
            logger.warning("Non-critical cache tier failed during %s of %s: %s", op, key or "*", exc)

    def _fan_out(self, op: str, tiers: List[Cache], *args) -> None:
        """Apply an invalidation to every tier, then raise the first failure."""
        first_error: Optional[CacheError] = None
        for tier in tiers:
            try:
                getattr(tier, op)(*args)
            except CacheError as exc:
                self._count("errors")
                logger.warning("Cache tier failed during %s: %s", op, exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    # ---- background jobs ----

    def _enqueue(self, job: Tuple[str, Callable, tuple]) -> None:
        try:
            self._jobs.put_nowait(job)
        except queue.Full:
            raise BufferFullError("background job queue is full", op="enqueue") from None

    def _submit(self, description: str, fn: Callable, *args) -> bool:
        """Queue a best-effort job. Returns False if it was dropped."""
        if not self._workers:
            self._run_job(description, fn, args)
            return True

        with self._idle:
            self._pending += 1
        try:
            self._enqueue((description, fn, args))
        except BufferFullError as exc:
            self._job_done()
            self._count("dropped")
            logger.warning("Dropping cache job %s: %s", description, exc)
            return False
        return True

    def _run_job(self, description: str, fn: Callable, args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            self._count("errors")
            logger.warning("Background cache job %s failed", description, exc_info=True)

    def _job_done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending <= 0:
                self._idle.notify_all()

    def _work(self) -> None:
        while True:
            job = self._jobs.get()
            if job is None:
                return
            description, fn, args = job
            try:
                self._run_job(description, fn, args)
            finally:
                self._job_done()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until queued jobs have run. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending > 0:
                if deadline is None:
                    self._idle.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    # ---- promotion ----

    def _claim_promotion(self, key: str) -> object:
        token = object()
        with self._promotion_lock:
            self._promotions[key] = token
        return token

    def _release_promotion(self, key: str, token: object) -> None:
        with self._promotion_lock:
            if self._promotions.get(key) is token:
                del self._promotions[key]

    def _cancel_promotions(self, keys: Optional[Iterable[str]] = None) -> None:
        """Void queued promotions of ``keys`` (all keys when None).

        Every write and invalidation calls this before touching a tier.
        """
        with self._promotion_lock:
            if keys is None:
                self._promotions.clear()
                return
            for key in keys:
                self._promotions.pop(key, None)

    def _schedule_promotion(self, keys: List[str], source: Cache, targets: List[Cache]) -> None:
        tokens = {key: self._claim_promotion(key) for key in keys}
        description = f"promote {keys[0]}" if len(keys) == 1 else f"promote {len(keys)} keys"
        if not self._submit(description, self._promote_multi, tokens, source, targets):
            for key, token in tokens.items():
                self._release_promotion(key, token)

    def _promote(self, key: str, token: object, source: Cache, targets: List[Cache]) -> None:
        """Copy ``key`` from ``source`` into the faster ``targets``.

        Value and TTL are read from ``source`` when the job runs. The copy is
        skipped when a write or invalidation of ``key`` has gone through this
        orchestrator since the hit that queued the job.
        """
        try:
            value = source.get(key)
            remaining = source.ttl(key)
        except KeyNotFoundError:
            self._release_promotion(key, token)
            return  # expired or deleted since the hit
        except CacheError:
            self._release_promotion(key, token)
            raise

        with self._promotion_lock:
            if self._promotions.get(key) is not token:
                return
            del self._promotions[key]
            if remaining is not None and remaining <= 0:
                return
            ttl = -1 if remaining is None else remaining
            for tier in targets:
                self._secondary("promote", key, tier.set, key, value, ttl)

    def _promote_multi(self, tokens: Dict[str, object], source: Cache, targets: List[Cache]) -> None:
        pending = dict(tokens)
        try:
            for key, token in tokens.items():
                del pending[key]
                self._promote(key, token, source, targets)
        finally:
            for key, token in pending.items():
                self._release_promotion(key, token)

    def _propagate(self, op: str, key: Optional[str], targets: List[Cache], *args) -> None:
        for tier in targets:
            self._secondary(op, key, getattr(tier, op), *args)

    # ---- Cache contract ----

    def get(self, key: str) -> Any:
        tiers = self._snapshot("get")
        for index, tier in enumerate(tiers):
            try:
                value = tier.get(key)
            except KeyNotFoundError:
                continue
            self._count("hits")
            if self.config.promote_l1 and index > 0:
                self._schedule_promotion([key], tier, tiers[:index])
            return value

        self._count("misses")
        raise KeyNotFoundError(key)

    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        tiers = self._snapshot("set")
        ttl = self._resolve_ttl(ttl)
        critical, rest = tiers[0], tiers[1:]

        self._cancel_promotions([key])
        critical.set(key, value, ttl)
        if not rest:
            return
        if self.config.write_through:
            for tier in rest:
                self._secondary("set", key, tier.set, key, value, ttl)
        elif self.config.write_back:
            self._submit(f"write-back {key}", self._propagate, "set", key, rest, key, value, ttl)

    def delete(self, key: str) -> None:
        tiers = self._snapshot("delete")
        self._cancel_promotions([key])
        self._fan_out("delete", tiers, key)

    def exists(self, key: str) -> bool:
        for tier in self._snapshot("exists"):
            if tier.exists(key):
                return True
        return False

    def clear(self) -> None:
        tiers = self._snapshot("clear")
        self._cancel_promotions()
        self._fan_out("clear", tiers)

    def keys(self, pattern: str = "*") -> List[str]:
        found = set()
        for tier in self._snapshot("keys"):
            found.update(tier.keys(pattern))
        return sorted(found)

    def ttl(self, key: str) -> Optional[float]:
        for tier in self._snapshot("ttl"):
            try:
                return tier.ttl(key)
            except KeyNotFoundError:
                continue
        raise KeyNotFoundError(key, op="ttl")

    def expire(self, key: str, ttl: float) -> None:
        tiers = self._snapshot("expire")
        ttl = self._resolve_ttl(ttl)
        self._cancel_promotions([key])
        updated = 0
        first_error: Optional[CacheError] = None
        for tier in tiers:
            try:
                tier.expire(key, ttl)
                updated += 1
            except KeyNotFoundError:
                continue
            except CacheError as exc:
                self._count("errors")
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
        if not updated:
            raise KeyNotFoundError(key, op="expire")

    def increment(self, key: str, delta: int = 1) -> int:
        """Apply ``delta`` atomically and return the new value.

        The counter lives in the slowest tier, the one shared between
        processes, whose own increment is atomic. Faster tiers drop their
        copy so the next ``get`` reads the new total from below. Counters
        ignore the write policy; the slowest tier's errors are raised.
        """
        tiers = self._snapshot("increment")
        authority, upper = tiers[-1], tiers[:-1]

        self._cancel_promotions([key])
        value = authority.increment(key, delta)
        for tier in upper:
            self._secondary("increment", key, tier.delete, key)
        return value

    def get_multi(self, keys: Iterable[str]) -> Dict[str, Any]:
        tiers = self._snapshot("get_multi")
        remaining = list(dict.fromkeys(keys))
        result: Dict[str, Any] = {}

        for index, tier in enumerate(tiers):
            if not remaining:
                break
            found = tier.get_multi(remaining)
            if not found:
                continue
            result.update(found)
            if self.config.promote_l1 and index > 0:
                self._schedule_promotion(list(found), tier, tiers[:index])
            remaining = [key for key in remaining if key not in found]

        self._count("hits", len(result))
        self._count("misses", len(remaining))
        return result

    def set_multi(self, items: Dict[str, Any], ttl: float = 0) -> None:
        if not items:
            return
        tiers = self._snapshot("set_multi")
        ttl = self._resolve_ttl(ttl)
        critical, rest = tiers[0], tiers[1:]

        self._cancel_promotions(items)
        critical.set_multi(items, ttl)
        if not rest:
            return
        if self.config.write_through:
            for tier in rest:
                self._secondary("set_multi", None, tier.set_multi, items, ttl)
        elif self.config.write_back:
            self._submit(
                f"write-back {len(items)} keys",
                self._propagate, "set_multi", None, rest, dict(items), ttl,
            )

    def delete_multi(self, keys: Iterable[str]) -> None:
        tiers = self._snapshot("delete_multi")
        keys = list(keys)
        self._cancel_promotions(keys)
        self._fan_out("delete_multi", tiers, keys)

    def stats(self) -> CacheStats:
        """Orchestrator counters plus key and eviction totals summed over tiers."""
        with self._stats_lock:
            combined = CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                errors=self._stats.errors,
                dropped=self._stats.dropped,
            )
        for tier in self.tiers:
            try:
                tier_stats = tier.stats()
            except CacheError as exc:
                logger.debug("Skipping stats for unavailable tier: %s", exc)
                continue
            combined.keys += tier_stats.keys
            combined.evictions += tier_stats.evictions
        return combined

    def ping(self) -> bool:
        tiers = self.tiers
        return bool(tiers) and not self._closed and all(tier.ping() for tier in tiers)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Drain pending jobs, stop the workers and close every tier."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            tiers = [cache for _, cache in self._tiers]
            self._tiers = []

        if not self.flush(timeout):
            logger.warning("Closing cache with %d background jobs still pending", self._pending)
        for _ in self._workers:
            try:
                self._jobs.put(None, timeout=timeout)
            except queue.Full:
                logger.warning("Cache job queue still full at shutdown; workers left to exit with the process")
                break
        for worker in self._workers:
            worker.join(timeout=timeout)

        first_error: Optional[CacheError] = None
        for tier in tiers:
            try:
                tier.close()
            except CacheError as exc:
                logger.warning("Failed to close cache tier: %s", exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
