# app/client/request_client.py

"""
Client-side request layer used by the dashboards.

Contract:
    key      = "METHOD:url?query:json-body" (body keys sorted)
    cache    = GET only, per-call TTL (default 30s), checked before dispatch
    dedup    = identical concurrent calls share one in-flight task
    retries  = GET/HEAD only unless the caller passes retries= for a write;
               transport errors, timeouts, 5xx and 429; backoff
               retry_delay * 2 ** (attempt - 1); other 4xx never retried
    writes   = a successful non-GET drops cached GETs and publishes the
               topics listed in OPERATION_RULES
    staleness = a GET dispatched before an invalidation of its prefix
               still answers its callers but is not cached

One instance per application lifetime. Nothing is module-global.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

import httpx
from loguru import logger

from app.client.events import EventBus, InvalidationEvent, InvalidationTopic

T = InvalidationTopic

DEFAULT_TTL_SECONDS = 30.0
RETRYABLE_STATUSES = {429}
IDEMPOTENT_METHODS = {"GET", "HEAD"}


# ------------------------------------------------------------
# ERRORS
# ------------------------------------------------------------
class ApiError(Exception):
    def __init__(self, status: int, data: Any = None, after_timeout: bool = False):
        self.status = status
        self.data = data
        # an earlier attempt of the same call timed out and may have landed
        self.after_timeout = after_timeout
        detail = data.get("detail") if isinstance(data, dict) else data
        super().__init__(f"HTTP {status}: {detail}")

    @property
    def conflict(self) -> bool:
        return self.status == 409


class RequestTimeout(Exception):
    pass


# ------------------------------------------------------------
# OPERATION -> TOPICS
# ------------------------------------------------------------
@dataclass(frozen=True)
class OperationRule:
    method: str
    pattern: "re.Pattern[str]"
    topics: FrozenSet[InvalidationTopic]

    def matches(self, method: str, path: str) -> bool:
        return self.method == method and bool(self.pattern.match(path))


def rule(method: str, pattern: str, *topics: InvalidationTopic) -> OperationRule:
    return OperationRule(method, re.compile(pattern), frozenset(topics))


OPERATION_RULES: Tuple[OperationRule, ...] = (
    rule("POST", r"^/api/staff-approval/requests/?$", T.StaffApprovals, T.Notifications),
    rule("POST", r"^/api/staff-approval/requests/[^/]+/decide/?$", T.StaffApprovals, T.Notifications),
    rule("POST", r"^/api/leaves/?$", T.Leaves, T.Notifications),
    rule("PATCH", r"^/api/leaves/[^/]+/?$", T.Leaves, T.Notifications),
    rule("DELETE", r"^/api/leaves/[^/]+/?$", T.Leaves, T.Notifications),
    rule("POST", r"^/api/marksheets/?$", T.Marksheets),
    rule("PATCH", r"^/api/marksheets/[^/]+/?$", T.Marksheets, T.Notifications),
    rule("POST", r"^/api/marksheets/bulk-send/?$", T.Marksheets, T.Notifications),
    rule("PATCH", r"^/api/notifications/.+$", T.Notifications),
)

TOPIC_PREFIXES: Dict[InvalidationTopic, Tuple[str, ...]] = {
    T.Marksheets: ("/api/marksheets",),
    T.Notifications: ("/api/notifications",),
    T.Leaves: ("/api/leaves",),
    T.StaffApprovals: ("/api/staff-approval",),
}

# server push "data.type" -> topics (notifications is always added)
PUSH_TYPE_TOPICS: Dict[str, FrozenSet[InvalidationTopic]] = {
    "leave_request": frozenset({T.Leaves}),
    "late_arrival": frozenset({T.Leaves}),
    "leave_approval": frozenset({T.Leaves}),
    "leave_deleted": frozenset({T.Leaves}),
    "dispatch_request": frozenset({T.Marksheets}),
    "marksheet_approval": frozenset({T.Marksheets}),
    "marksheet_dispatch": frozenset({T.Marksheets}),
    "dispatch_report": frozenset({T.Marksheets}),
    "staff_account_approval": frozenset({T.StaffApprovals}),
    "staff_account_status": frozenset({T.StaffApprovals}),
    "staff_account_approved": frozenset({T.StaffApprovals}),
    "staff_account_rejected": frozenset({T.StaffApprovals}),
}


def topics_for(method: str, path: str) -> FrozenSet[InvalidationTopic]:
    found = set()
    for r in OPERATION_RULES:
        if r.matches(method, path):
            found |= r.topics
    return frozenset(found)


# ------------------------------------------------------------
# CLIENT
# ------------------------------------------------------------
@dataclass
class CacheEntry:
    path: str
    data: Any
    expires_at: float


@dataclass
class MutationOutcome:
    data: Any = None
    # the call timed out but verify() showed the change landed
    reconciled: bool = False


class RequestClient:
    def __init__(
        self,
        base_url: str = "",
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        bus: Optional[EventBus] = None,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        timeout: float = 15.0,
        retries: int = 2,
        retry_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport)
        self.bus = bus or EventBus()
        self.default_ttl = default_ttl
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep
        self._cache: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}
        # bumped per prefix on every invalidation
        self._generations: Dict[str, int] = {}

    async def __aenter__(self) -> "RequestClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------
    # KEYS
    # ------------------------------------------------------------
    @staticmethod
    def make_key(method: str, url: str, params: Optional[dict] = None, body: Any = None) -> str:
        full = str(httpx.URL(url, params=params)) if params else url
        serialized = json.dumps(body, sort_keys=True, default=str) if body is not None else ""
        return f"{method.upper()}:{full}:{serialized}"

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def _generation(self, path: str) -> Tuple[int, ...]:
        return tuple(
            self._generations.get(prefix, 0)
            for prefixes in TOPIC_PREFIXES.values()
            for prefix in prefixes
            if path.startswith(prefix)
        )

    # ------------------------------------------------------------
    # PUBLIC CALLS
    # ------------------------------------------------------------
    async def request(
        self,
        method: str,
        url: str,
        *,
        json_body: Any = None,
        params: Optional[dict] = None,
        ttl: Optional[float] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        use_cache: bool = True,
    ) -> Any:
        method = method.upper()
        key = self.make_key(method, url, params, json_body)

        if method == "GET" and use_cache:
            entry = self._cache.get(key)
            if entry and entry.expires_at > self._clock():
                return entry.data
            if entry:
                del self._cache[key]

        if retries is None:
            retries = self.retries if method in IDEMPOTENT_METHODS else 0

        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._execute(
                method, url, key, json_body, params,
                self.default_ttl if ttl is None else ttl,
                self.timeout if timeout is None else timeout,
                retries,
                use_cache,
                self._generation(httpx.URL(url).path),
            ))
            self._inflight[key] = pending
            pending.add_done_callback(lambda _f, k=key: self._inflight.pop(k, None))

        # one caller giving up must not cancel the shared call
        return await asyncio.shield(pending)

    async def get(self, url: str, **kwargs) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, json_body: Any = None, **kwargs) -> Any:
        return await self.request("POST", url, json_body=json_body, **kwargs)

    async def patch(self, url: str, json_body: Any = None, **kwargs) -> Any:
        return await self.request("PATCH", url, json_body=json_body, **kwargs)

    async def delete(self, url: str, **kwargs) -> Any:
        return await self.request("DELETE", url, **kwargs)

    async def mutate_with_reconcile(
        self,
        method: str,
        url: str,
        verify: Callable[[], Awaitable[bool]],
        json_body: Any = None,
        **kwargs,
    ) -> MutationOutcome:
        """
        A timed-out write may still have landed server-side. Ask `verify`
        (usually a fresh GET) before reporting failure. With opt-in retries,
        a 409 answering the retry of a timed-out attempt is checked the same way.
        """
        try:
            data = await self.request(method, url, json_body=json_body, **kwargs)
            return MutationOutcome(data=data)
        except RequestTimeout:
            logger.warning(f"{method} {url} timed out; re-fetching state before reporting failure")
            if await self._landed(method, url, verify):
                return MutationOutcome(reconciled=True)
            raise
        except ApiError as e:
            if not (e.conflict and e.after_timeout):
                raise
            logger.warning(f"{method} {url} conflicted after a timed-out attempt; re-fetching state")
            if await self._landed(method, url, verify):
                return MutationOutcome(reconciled=True)
            raise

    async def _landed(self, method: str, url: str, verify: Callable[[], Awaitable[bool]]) -> bool:
        self.invalidate(topics_for(method.upper(), httpx.URL(url).path), source=f"{method.upper()} {url}")
        return await verify()

    # ------------------------------------------------------------
    # EXECUTION
    # ------------------------------------------------------------
    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** (attempt - 1))

    async def _execute(
        self,
        method: str,
        url: str,
        key: str,
        json_body: Any,
        params: Optional[dict],
        ttl: float,
        timeout: float,
        retries: int,
        use_cache: bool,
        generation: Tuple[int, ...] = (),
    ) -> Any:
        attempts = retries + 1
        timed_out = False
        for attempt in range(1, attempts + 1):
            last = attempt == attempts
            try:
                response = await asyncio.wait_for(
                    self._http.request(method, url, json=json_body, params=params),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                if last:
                    raise RequestTimeout(f"{method} {url} timed out after {timeout}s")
                timed_out = True
                await self._sleep(self._backoff(attempt))
                continue
            except httpx.TransportError as e:
                if last:
                    raise
                logger.debug(f"{method} {url} transport error ({e.__class__.__name__}), retrying")
                await self._sleep(self._backoff(attempt))
                continue

            if (response.status_code >= 500 or response.status_code in RETRYABLE_STATUSES) and not last:
                await self._sleep(self._backoff(attempt))
                continue

            data = self._parse(response)
            if response.status_code >= 400:
                raise ApiError(response.status_code, data, after_timeout=timed_out)

            if method == "GET":
                if self._generation(httpx.URL(url).path) != generation:
                    logger.debug(f"GET {url} was invalidated while in flight, not cached")
                elif use_cache and ttl > 0:
                    self._cache[key] = CacheEntry(
                        path=response.request.url.path,
                        data=data,
                        expires_at=self._clock() + ttl,
                    )
            else:
                path = response.request.url.path
                self.invalidate(topics_for(method, path), source=f"{method} {path}")
            return data

    @staticmethod
    def _parse(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # ------------------------------------------------------------
    # INVALIDATION
    # ------------------------------------------------------------
    def invalidate(self, topics: Iterable[InvalidationTopic], source: str = "manual") -> None:
        topics = list(topics)
        prefixes = tuple(p for t in topics for p in TOPIC_PREFIXES.get(t, ()))
        for prefix in prefixes:
            self._generations[prefix] = self._generations.get(prefix, 0) + 1
        if prefixes:
            for key in [k for k, e in self._cache.items() if e.path.startswith(prefixes)]:
                del self._cache[key]
        for topic in topics:
            self.bus.publish(InvalidationEvent(topic=topic, source=source))

    def handle_push_message(self, message: Dict[str, Any]) -> FrozenSet[InvalidationTopic]:
        """Service-worker push payload -> cache drop + bus events."""
        data = message.get("data") if isinstance(message.get("data"), dict) else message
        kind = str(data.get("type") or "")
        topics = PUSH_TYPE_TOPICS.get(kind, frozenset()) | {T.Notifications}
        self.invalidate(topics, source=f"push:{kind or 'unknown'}")
        return frozenset(topics)

    def clear_cache(self) -> None:
        self._cache.clear()
