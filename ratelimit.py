import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse

from auth import decode_access_token
from errors import RateLimited

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class CounterStore(ABC):
    @abstractmethod
    def increment(self, key: str, window: float, now: float) -> Tuple[int, float]:
        """
        Count one hit for key and return (hits in the current window, reset time).
        Opens a fresh window when none is active. Must be atomic per key.
        """

    @abstractmethod
    def decrement(self, key: str, now: float) -> None:
        """Take back one hit from the active window, if any."""

    @abstractmethod
    def reset(self, key: str) -> None:
        pass

    @abstractmethod
    def prune(self, now: float) -> int:
        """Drop expired windows and return how many were removed."""


class MemoryCounterStore(CounterStore):
    """Per-process counters, guarded by a single lock."""

    def __init__(self):
        self._counters: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def increment(self, key, window, now):
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or entry[1] <= now:
                entry = [0, now + window]
                self._counters[key] = entry
            entry[0] += 1
            return int(entry[0]), entry[1]

    def decrement(self, key, now):
        with self._lock:
            entry = self._counters.get(key)
            if entry is not None and entry[1] > now and entry[0] > 0:
                entry[0] -= 1

    def reset(self, key):
        with self._lock:
            self._counters.pop(key, None)

    def prune(self, now):
        with self._lock:
            expired = [k for k, entry in self._counters.items() if entry[1] <= now]
            for k in expired:
                del self._counters[k]
            return len(expired)

    def __len__(self):
        return len(self._counters)


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window: float
    message: str = "Too many requests, please try again later."
    path_prefix: str = ""
    methods: Optional[FrozenSet[str]] = None
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False

    def applies_to(self, method: str, path: str) -> bool:
        if self.methods is not None and method.upper() not in self.methods:
            return False
        if not self.path_prefix:
            return True
        prefix = self.path_prefix.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")

    def should_discount(self, status_code: int) -> bool:
        failed = status_code >= 400
        if failed:
            return self.skip_failed_requests
        return self.skip_successful_requests


@dataclass
class RateLimitResult:
    policy: RateLimitPolicy
    key: str
    count: int
    reset_at: float
    now: float

    @property
    def exceeded(self) -> bool:
        return self.count > self.policy.limit

    @property
    def remaining(self) -> int:
        return max(self.policy.limit - self.count, 0)

    @property
    def retry_after(self) -> int:
        return max(int(math.ceil(self.reset_at - self.now)), 1)

    def headers(self) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.policy.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.retry_after),
        }


def client_key(request: Request) -> str:
    """User id from a valid bearer token, else session id, else client address."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        user_id = decode_access_token(token.strip())
        if user_id is not None:
            return f"user:{user_id}"

    session_id = request.headers.get("x-session-id") or request.cookies.get("session_id")
    if session_id:
        return f"session:{session_id}"

    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


class RateLimiter:
    """HTTP middleware applying every matching policy to each request."""

    def __init__(
        self,
        policies: Iterable[RateLimitPolicy],
        store: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.monotonic,
        enabled: bool = True,
        exempt_paths: Iterable[str] = (),
    ):
        self.policies = list(policies)
        self.store = store if store is not None else MemoryCounterStore()
        self.clock = clock
        self.enabled = enabled
        self.exempt_paths = frozenset(exempt_paths)

    def policies_for(self, method: str, path: str) -> List[RateLimitPolicy]:
        if path in self.exempt_paths:
            return []
        return [p for p in self.policies if p.applies_to(method, path)]

    def hit(self, policy: RateLimitPolicy, key: str) -> RateLimitResult:
        now = self.clock()
        count, reset_at = self.store.increment(f"{policy.name}:{key}", policy.window, now)
        return RateLimitResult(policy, key, count, reset_at, now)

    def release(self, result: RateLimitResult) -> None:
        self.store.decrement(f"{result.policy.name}:{result.key}", self.clock())
        result.count = max(result.count - 1, 0)

    def prune(self) -> int:
        removed = self.store.prune(self.clock())
        if removed:
            logger.debug("Pruned %d expired rate limit windows", removed)
        return removed

    async def __call__(self, request: Request, call_next):
        if not self.enabled:
            return await call_next(request)
        policies = self.policies_for(request.method, request.url.path)
        if not policies:
            return await call_next(request)

        key = client_key(request)
        results = []
        for policy in policies:
            result = self.hit(policy, key)
            results.append(result)
            if result.exceeded:
                logger.warning(
                    "Rate limit '%s' exceeded for %s on %s %s",
                    policy.name,
                    key,
                    request.method,
                    request.url.path,
                )
                exc = RateLimited(policy.message, retry_after=result.retry_after)
                headers = dict(result.headers())
                headers.update(exc.headers)
                return JSONResponse(
                    status_code=exc.status_code, content=exc.to_dict(), headers=headers
                )

        response = await call_next(request)
        for result in results:
            if result.policy.should_discount(response.status_code):
                self.release(result)
        tightest = min(results, key=lambda r: r.remaining)
        response.headers.update(tightest.headers())
        return response


def build_rate_limiter(settings, store=None, clock=time.monotonic) -> RateLimiter:
    prefix = settings.api_prefix.rstrip("/")
    policies = [
        RateLimitPolicy(
            name="general",
            limit=settings.general_rate_limit,
            window=settings.general_rate_window,
            message="Too many requests from this client, please try again later.",
            path_prefix=prefix,
        ),
        RateLimitPolicy(
            name="auth",
            limit=settings.auth_rate_limit,
            window=settings.auth_rate_window,
            message="Too many authentication attempts, please try again later.",
            path_prefix=f"{prefix}/users",
            skip_successful_requests=settings.auth_rate_skip_successful,
        ),
        RateLimitPolicy(
            name="expenses",
            limit=settings.expense_rate_limit,
            window=settings.expense_rate_window,
            message="Too many expense operations, please slow down.",
            path_prefix=f"{prefix}/expenses",
            methods=MUTATING_METHODS,
        ),
    ]
    return RateLimiter(
        policies,
        store=store,
        clock=clock,
        enabled=settings.rate_limit_enabled,
        exempt_paths=[f"{prefix}/health"],
    )
