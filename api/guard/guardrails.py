import asyncio
import functools
import inspect
import json
import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


def now_ms() -> int:
    return int(time.time() * 1000)


class InvalidKeyError(ValueError):
    """Raised for empty identities, operations or cache keys."""


class InvalidPatternError(ValueError):
    """Raised when a cache clear pattern is not a valid regular expression."""


def _require_key(value: str, name: str) -> None:
    if not isinstance(value, str) or not value:
        raise InvalidKeyError(f"{name} must be a non-empty string")


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int = 10
    window_ms: int = 60_000


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_ms: Optional[int] = None


class RateLimiter:
    """
    In-memory, per-process sliding window rate limiter.

    Requests are counted per (identity, operation) pair. Each operation can
    carry its own policy; operations without one use the default policy.
    Stale timestamps are pruned on access, and empty logs are dropped by
    ``sweep()``, which the host runs on a timer (see ``PeriodicSweeper``).
    """

    def __init__(
        self,
        default_policy: RateLimitPolicy = RateLimitPolicy(),
        overrides: Optional[Mapping[str, RateLimitPolicy]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.default_policy = default_policy
        self.overrides: Dict[str, RateLimitPolicy] = dict(overrides or {})
        self._clock = clock
        self._log: Dict[Tuple[str, str], Deque[int]] = {}
        self._lock = threading.Lock()

    def policy_for(self, operation: str) -> RateLimitPolicy:
        return self.overrides.get(operation, self.default_policy)

    def check_limit(self, identity: str, operation: str) -> RateLimitDecision:
        _require_key(identity, "identity")
        _require_key(operation, "operation")

        policy = self.policy_for(operation)
        key = (identity, operation)

        with self._lock:
            now = self._clock()
            q = self._log.get(key)
            if q is None:
                q = deque()
                self._log[key] = q

            _prune(q, now, policy.window_ms)

            if len(q) >= policy.max_requests:
                retry_after = policy.window_ms - (now - q[0])
                return RateLimitDecision(
                    allowed=False,
                    limit=policy.max_requests,
                    remaining=0,
                    reset_at_ms=q[0] + policy.window_ms,
                    retry_after_ms=retry_after,
                )

            q.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=policy.max_requests,
                remaining=policy.max_requests - len(q),
                reset_at_ms=q[0] + policy.window_ms,
            )

    def sweep(self) -> int:
        """Prune every log and drop the keys left empty. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            stale = []
            for key, q in self._log.items():
                _prune(q, now, self.policy_for(key[1]).window_ms)
                if not q:
                    stale.append(key)
            for key in stale:
                del self._log[key]

        if stale:
            logger.debug("Rate limiter sweep dropped %d idle keys", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._log)


def _prune(q: Deque[int], now: int, window_ms: int) -> None:
    while q and now - q[0] >= window_ms:
        q.popleft()


class PeriodicSweeper:
    """Runs ``task`` every ``interval_seconds`` on a daemon thread until stopped."""

    def __init__(self, task: Callable[[], Any], interval_seconds: float, name: str = "sweeper"):
        self.task = task
        self.interval_seconds = interval_seconds
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.task()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)


class CacheTTL:
    SHORT = 60_000
    MEDIUM = 300_000
    LONG = 900_000
    EXTENDED = 3_600_000


@dataclass
class CacheEntry:
    data: Any
    expiry_ms: int
    inserted_at_ms: int


def _tagged(value: Any) -> str:
    return f"{type(value).__module__}.{type(value).__qualname__}:{value}"


def default_memo_key(fn: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> str:
    """
    Key from the function name and a JSON dump of its arguments.

    Values JSON cannot encode are written as their type name plus ``str()``,
    so ``Decimal("1")`` and ``"1"`` stay distinct. Objects whose ``str()`` is
    not stable (the default ``object`` repr carries a memory address) need a
    ``key_fn`` instead.
    """
    payload = json.dumps([list(args), kwargs], sort_keys=True, default=_tagged, separators=(",", ":"))
    return f"memoized:{fn.__module__}.{fn.__qualname__}:{payload}"


class TTLCache:
    """
    Simple in-memory TTL cache with a hard cap on entries.

    Entries are kept in insertion order; an overwrite re-inserts the key, so
    the first entry is always the one with the smallest insertion time. When
    the cap is exceeded the oldest insertion is evicted (FIFO, reads do not
    refresh it).
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl_ms: int = CacheTTL.MEDIUM,
        clock: Callable[[], int] = now_ms,
    ):
        self.max_size = max_size
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}
        self._inflight: Dict[Tuple[asyncio.AbstractEventLoop, str], "asyncio.Task[Any]"] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        _require_key(key, "key")
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            if self._clock() > entry.expiry_ms:
                del self._store[key]
                return default
            return entry.data

    def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        _require_key(key, "key")
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms

        with self._lock:
            now = self._clock()
            self._store.pop(key, None)
            self._store[key] = CacheEntry(data=value, expiry_ms=now + ttl, inserted_at_ms=now)

            # insertion order == inserted_at order, so the head is the oldest
            while len(self._store) > self.max_size:
                oldest_key = next(iter(self._store))
                del self._store[oldest_key]
                logger.debug("Evicted cache entry %s", oldest_key)

    def delete(self, key: str) -> None:
        _require_key(key, "key")
        with self._lock:
            self._store.pop(key, None)

    def clear(self, pattern: Optional[str] = None) -> int:
        """Remove every entry, or only those whose key matches ``pattern``. Returns the count."""
        if pattern is None:
            with self._lock:
                removed = len(self._store)
                self._store.clear()
            return removed

        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise InvalidPatternError(f"Invalid pattern {pattern!r}: {exc}") from exc

        with self._lock:
            matched = [k for k in self._store if regex.search(k)]
            for k in matched:
                del self._store[k]
        return len(matched)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            keys: List[str] = list(self._store)
            oldest = next(iter(self._store.values())).inserted_at_ms if keys else None
        return {"size": len(keys), "keys": keys, "oldest_entry_timestamp": oldest}

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def memoize(
        self,
        ttl_ms: Optional[int] = None,
        key_fn: Optional[Callable[..., str]] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Cache a function's results keyed by its arguments.

        Coroutine functions share one in-flight call per key, so concurrent
        callers with the same arguments await a single computation. Plain
        functions are cache-aside only.
        """

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            def make_key(args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> str:
                if key_fn is not None:
                    return key_fn(*args, **kwargs)
                return default_memo_key(fn, args, kwargs)

            if inspect.iscoroutinefunction(fn):

                @functools.wraps(fn)
                async def async_wrapper(*args, **kwargs):
                    key = make_key(args, kwargs)
                    cached = self.get(key, _MISSING)
                    if cached is not _MISSING:
                        return cached

                    # tasks belong to the loop that created them
                    slot = (asyncio.get_running_loop(), key)
                    self._drop_closed_loops()
                    task = self._inflight.get(slot)
                    if task is None:
                        task = asyncio.ensure_future(self._fill(key, fn, args, kwargs, ttl_ms))
                        self._inflight[slot] = task
                        task.add_done_callback(functools.partial(self._forget, slot))
                    return await asyncio.shield(task)

                return async_wrapper

            @functools.wraps(fn)
            def wrapper(*args, **kwargs):
                key = make_key(args, kwargs)
                cached = self.get(key, _MISSING)
                if cached is not _MISSING:
                    return cached
                result = fn(*args, **kwargs)
                self.set(key, result, ttl_ms)
                return result

            return wrapper

        return decorator

    async def _fill(self, key, fn, args, kwargs, ttl_ms):
        result = await fn(*args, **kwargs)
        self.set(key, result, ttl_ms)
        return result

    def _forget(self, slot, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(slot) is task:
            del self._inflight[slot]

    def _drop_closed_loops(self) -> None:
        for slot in [s for s in list(self._inflight) if s[0].is_closed()]:
            self._inflight.pop(slot, None)
