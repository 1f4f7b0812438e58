import asyncio

import httpx
import pytest

from app.client.events import EventBus, InvalidationEvent, InvalidationTopic as T
from app.client.request_client import (
    ApiError,
    RequestClient,
    RequestTimeout,
    topics_for,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Backend:
    """Scripted server: path -> list of responses, last one repeats."""

    def __init__(self, script=None, delay=0.0):
        self.script = script or {}
        self.delay = delay
        self.calls = []

    async def __call__(self, request):
        self.calls.append((request.method, request.url.path))
        if self.delay:
            await asyncio.sleep(self.delay)
        responses = self.script.get(request.url.path) or [httpx.Response(200, json={"path": request.url.path})]
        return responses.pop(0) if len(responses) > 1 else responses[0]


def make_client(backend, **kwargs):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    kwargs.setdefault("clock", FakeClock())
    client = RequestClient(
        "http://testserver",
        transport=httpx.MockTransport(backend),
        sleep=fake_sleep,
        **kwargs,
    )
    return client, sleeps


# ------------------------------------------------------------------
# KEYS / TOPICS
# ------------------------------------------------------------------
def test_key_ignores_body_key_order():
    a = RequestClient.make_key("post", "/api/leaves", body={"a": 1, "b": 2})
    b = RequestClient.make_key("POST", "/api/leaves", body={"b": 2, "a": 1})
    assert a == b
    assert RequestClient.make_key("GET", "/api/leaves", params={"status": "requested"}) != RequestClient.make_key("GET", "/api/leaves")


def test_operation_topics():
    assert topics_for("PATCH", "/api/marksheets/abc") == {T.Marksheets, T.Notifications}
    assert topics_for("DELETE", "/api/leaves/abc") == {T.Leaves, T.Notifications}
    assert topics_for("POST", "/api/staff-approval/requests/abc/decide") == {T.StaffApprovals, T.Notifications}
    assert topics_for("PATCH", "/api/notifications/read-all") == {T.Notifications}
    assert topics_for("GET", "/api/leaves") == frozenset()


# ------------------------------------------------------------------
# CACHE / DEDUP
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_get_cache_expires_after_ttl():
    backend = Backend()
    clock = FakeClock()
    client, _ = make_client(backend, clock=clock)

    async with client:
        await client.get("/api/leaves")
        await client.get("/api/leaves")
        assert len(backend.calls) == 1

        clock.now += 29
        await client.get("/api/leaves")
        assert len(backend.calls) == 1

        clock.now += 2
        await client.get("/api/leaves")
        assert len(backend.calls) == 2

        await client.get("/api/leaves", use_cache=False)
        assert len(backend.calls) == 3


@pytest.mark.asyncio
async def test_concurrent_identical_calls_share_one_request():
    backend = Backend(delay=0.01)
    client, _ = make_client(backend)

    async with client:
        results = await asyncio.gather(*(client.get("/api/marksheets") for _ in range(3)))
        assert len(backend.calls) == 1
        assert results[0] == results[1] == results[2]
        assert client.inflight_count == 0


@pytest.mark.asyncio
async def test_concurrent_writes_are_deduplicated_too():
    backend = Backend(delay=0.01)
    client, _ = make_client(backend)

    async with client:
        body = {"action": "send", "actor_id": "a1"}
        await asyncio.gather(
            client.patch("/api/marksheets/m1", json_body=body),
            client.patch("/api/marksheets/m1", json_body=dict(reversed(list(body.items())))),
        )
        assert backend.calls == [("PATCH", "/api/marksheets/m1")]


# ------------------------------------------------------------------
# RETRY / TIMEOUT
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_server_errors_retry_with_exponential_backoff():
    backend = Backend({
        "/api/leaves": [httpx.Response(503), httpx.Response(502), httpx.Response(200, json=[])],
    })
    client, sleeps = make_client(backend, retries=2, retry_delay=0.5)

    async with client:
        assert await client.get("/api/leaves") == []

    assert len(backend.calls) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    backend = Backend({"/api/leaves/x": [httpx.Response(409, json={"detail": "Leave request is already 'approved_by_hod'"})]})
    client, sleeps = make_client(backend)

    async with client:
        with pytest.raises(ApiError) as exc:
            await client.patch("/api/leaves/x", json_body={"action": "approve"})

    assert exc.value.conflict
    assert "approved_by_hod" in str(exc.value)
    assert len(backend.calls) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_timeout_raises_after_retries():
    backend = Backend(delay=1.0)
    client, sleeps = make_client(backend, timeout=0.01, retries=1, retry_delay=0.2)

    async with client:
        with pytest.raises(RequestTimeout):
            await client.get("/api/notifications")

    assert sleeps == [0.2]


@pytest.mark.asyncio
async def test_timed_out_write_is_sent_once_by_default():
    backend = Backend(delay=1.0)
    client, sleeps = make_client(backend, timeout=0.01)

    async with client:
        assert client.retries == 2
        with pytest.raises(RequestTimeout):
            await client.post("/api/leaves", json_body={"type": "leave", "reason": "Medical"})

    assert backend.calls == [("POST", "/api/leaves")]
    assert sleeps == []


@pytest.mark.asyncio
async def test_write_retries_only_when_asked():
    backend = Backend({"/api/marksheets/bulk-send": [httpx.Response(503), httpx.Response(200, json={"successful": 1})]})
    client, sleeps = make_client(backend, retry_delay=0.5)

    async with client:
        assert await client.post("/api/marksheets/bulk-send", json_body={"ids": ["m1"]}, retries=1) == {"successful": 1}

    assert len(backend.calls) == 2
    assert sleeps == [0.5]


@pytest.mark.asyncio
async def test_conflict_after_timed_out_attempt_is_reconciled():
    calls = []

    async def handler(request):
        calls.append(request.method)
        if len(calls) == 1:
            # lands on the server, answers too late
            await asyncio.sleep(1.0)
        return httpx.Response(409, json={"detail": "Leave request is already 'approved_by_hod'"})

    client, _ = make_client(handler, timeout=0.01, retry_delay=0.1)
    checked = []

    async def verify():
        checked.append(True)
        return True

    async with client:
        outcome = await client.mutate_with_reconcile(
            "PATCH", "/api/leaves/x", verify, json_body={"action": "approve"}, retries=1,
        )

    assert calls == ["PATCH", "PATCH"]
    assert checked == [True]
    assert outcome.reconciled is True


@pytest.mark.asyncio
async def test_plain_conflict_is_not_reconciled():
    backend = Backend({"/api/leaves/x": [httpx.Response(409, json={"detail": "already decided"})]})
    client, _ = make_client(backend)
    checked = []

    async def verify():
        checked.append(True)
        return True

    async with client:
        with pytest.raises(ApiError):
            await client.mutate_with_reconcile("PATCH", "/api/leaves/x", verify, json_body={"action": "approve"})

    assert checked == []


@pytest.mark.asyncio
async def test_timed_out_write_reconciled_by_refetch():
    backend = Backend(delay=1.0)
    client, _ = make_client(backend, timeout=0.01, retries=0)
    checked = []

    async def verify():
        checked.append(True)
        return True

    async with client:
        outcome = await client.mutate_with_reconcile("PATCH", "/api/leaves/x", verify, json_body={"action": "approve"})

    assert outcome.reconciled is True
    assert checked == [True]


@pytest.mark.asyncio
async def test_timed_out_write_without_landing_still_fails():
    backend = Backend(delay=1.0)
    client, _ = make_client(backend, timeout=0.01, retries=0)

    async def verify():
        return False

    async with client:
        with pytest.raises(RequestTimeout):
            await client.mutate_with_reconcile("PATCH", "/api/leaves/x", verify)


# ------------------------------------------------------------------
# INVALIDATION
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_write_drops_related_cache_and_publishes():
    backend = Backend()
    bus = EventBus()
    events = []
    bus.subscribe(T.Leaves, events.append)
    bus.subscribe(T.Notifications, events.append)
    client, _ = make_client(backend, bus=bus)

    async with client:
        await client.get("/api/leaves")
        await client.get("/api/marksheets")
        await client.patch("/api/leaves/abc", json_body={"action": "approve"})
        await client.get("/api/leaves")
        await client.get("/api/marksheets")

    gets = [c for c in backend.calls if c[0] == "GET"]
    assert gets == [("GET", "/api/leaves"), ("GET", "/api/marksheets"), ("GET", "/api/leaves")]
    assert {e.topic for e in events} == {T.Leaves, T.Notifications}
    assert all(e.source == "PATCH /api/leaves/abc" for e in events)


@pytest.mark.asyncio
async def test_read_in_flight_during_write_is_not_cached():
    state = {"status": "requested"}
    gate = asyncio.Event()
    calls = []

    async def handler(request):
        calls.append(request.method)
        if request.method == "GET":
            snapshot = dict(state)
            await gate.wait()
            return httpx.Response(200, json=snapshot)
        state["status"] = "approved_by_hod"
        return httpx.Response(200, json=state)

    client, _ = make_client(handler)

    async with client:
        slow_read = asyncio.ensure_future(client.get("/api/leaves/abc"))
        while not calls:
            await asyncio.sleep(0)

        await client.patch("/api/leaves/abc", json_body={"action": "approve"})
        gate.set()

        # callers that were already waiting still get their answer
        assert (await slow_read)["status"] == "requested"
        assert (await client.get("/api/leaves/abc"))["status"] == "approved_by_hod"

    assert calls == ["GET", "PATCH", "GET"]


@pytest.mark.asyncio
async def test_invalidation_of_other_topics_keeps_in_flight_read_cacheable():
    gate = asyncio.Event()
    calls = []

    async def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "GET":
            await gate.wait()
        return httpx.Response(200, json={"path": request.url.path})

    client, _ = make_client(handler)

    async with client:
        read = asyncio.ensure_future(client.get("/api/marksheets"))
        while not calls:
            await asyncio.sleep(0)
        client.invalidate({T.StaffApprovals})
        gate.set()
        await read
        await client.get("/api/marksheets")

    assert calls == [("GET", "/api/marksheets")]


@pytest.mark.asyncio
async def test_push_message_invalidates_matching_topics():
    backend = Backend()
    client, _ = make_client(backend)
    seen = []
    client.bus.subscribe(T.Marksheets, seen.append)

    async with client:
        await client.get("/api/marksheets")
        topics = client.handle_push_message({"title": "x", "data": {"type": "marksheet_dispatch"}})
        await client.get("/api/marksheets")

    assert topics == {T.Marksheets, T.Notifications}
    assert len(backend.calls) == 2
    assert seen[0].source == "push:marksheet_dispatch"


def test_event_bus_isolates_failing_handlers():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("screen unmounted")

    bus.subscribe(T.Leaves, broken)
    unsubscribe = bus.subscribe(T.Leaves, received.append)

    assert bus.publish(InvalidationEvent(T.Leaves, "manual")) == 1
    assert len(received) == 1

    unsubscribe()
    assert bus.subscriber_count(T.Leaves) == 1
    assert bus.publish(InvalidationEvent(T.Leaves, "manual")) == 0
