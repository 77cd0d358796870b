import asyncio
import json
import threading
from datetime import datetime, timezone

import httpx
import pytest

from media_worker.client import LeaseLostError, WorkerClient
from media_worker.kinds import EVENTS, JOBS, QueueBinding
from media_worker.loop import WorkerLoop


class FakeClient:
    """Records every call the loop makes; claims are served from per-kind lists."""

    def __init__(self, claims=None, worker_id="w-test"):
        self.worker_id = worker_id
        self.claims = {kind: list(items) for kind, items in (claims or {}).items()}
        self.calls = []
        self.lost = set()
        self.heartbeat_ok = True

    def named(self, name):
        return [c for c in self.calls if c[0] == name]

    async def claim(self, kind):
        self.calls.append(("claim", kind))
        pending = self.claims.get(kind) or []
        return pending.pop(0) if pending else None

    async def heartbeat(self, kind, key):
        self.calls.append(("heartbeat", kind, key))
        if key in self.lost:
            raise LeaseLostError(kind, key)
        return self.heartbeat_ok

    async def progress(self, kind, key, stage=None):
        self.calls.append(("progress", kind, key, stage))
        return True

    async def complete(self, kind, key, body):
        self.calls.append(("complete", kind, key, body))
        return True

    async def fail(self, kind, key, error):
        self.calls.append(("fail", kind, key, error))
        return True


def job_claim(job_id):
    return {"job": {"id": job_id, "assetId": job_id}, "catalogDataPath": "/catalog"}


async def wait_until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout=timeout)


async def settle(loop):
    await asyncio.gather(*loop.registry.execution_tasks())


def test_loop_requires_a_handler():
    with pytest.raises(ValueError):
        WorkerLoop(FakeClient(), [])


@pytest.mark.asyncio
async def test_poll_once_stops_at_capacity():
    client = FakeClient({"jobs": [job_claim(1), job_claim(2), job_claim(3)]})
    release = asyncio.Event()

    async def handler(claim):
        await release.wait()
        return {"proxyPath": f"/p/{claim['job']['id']}.mp4"}

    loop = WorkerLoop(client, [(JOBS, handler)], max_concurrent=2, heartbeat_interval=60)

    assert await loop.poll_once() is True
    assert await loop.poll_once() is True
    assert await loop.poll_once() is False

    assert len(loop.registry) == 2
    assert len(client.named("claim")) == 2

    release.set()
    await settle(loop)

    completes = sorted(client.named("complete"), key=lambda c: c[2])
    assert [c[2] for c in completes] == [1, 2]
    assert completes[0][3] == {"result": {"proxyPath": "/p/1.mp4"}}
    assert len(loop.registry) == 0


@pytest.mark.asyncio
async def test_backlog_is_claimed_without_waiting_for_poll_interval():
    client = FakeClient({"jobs": [job_claim(1), job_claim(2), job_claim(3)]})
    release = asyncio.Event()

    async def handler(claim):
        await release.wait()

    loop = WorkerLoop(client, [(JOBS, handler)], max_concurrent=3, poll_interval=60, heartbeat_interval=60)
    runner = asyncio.create_task(loop.run())

    await wait_until(lambda: len(loop.registry) == 3)

    loop.stop()
    release.set()
    await asyncio.wait_for(runner, timeout=2)
    assert len(client.named("complete")) == 3


@pytest.mark.asyncio
async def test_queues_are_polled_in_priority_order():
    client = FakeClient({
        "jobs": [job_claim(1)],
        "events": [{"batchId": "b-1", "rawPayload": "x"}],
    })

    async def handle_job(claim):
        return {}

    async def handle_batch(claim):
        return [{"eventType": "storage"}]

    loop = WorkerLoop(client, [(JOBS, handle_job), (EVENTS, handle_batch)], max_concurrent=2, heartbeat_interval=60)

    assert await loop.poll_once() is True
    assert client.named("claim") == [("claim", "jobs"), ("claim", "events")]

    await settle(loop)
    completes = {c[1]: c for c in client.named("complete")}
    assert completes["events"][2] == "b-1"
    assert completes["events"][3] == {"events": [{"eventType": "storage"}]}


@pytest.mark.asyncio
async def test_handler_error_is_reported_as_failure():
    client = FakeClient({"jobs": [job_claim(7)]})

    async def handler(claim):
        raise ValueError("unsupported codec")

    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=60)
    await loop.poll_once()
    await settle(loop)

    assert client.named("fail") == [("fail", "jobs", 7, "ValueError: unsupported codec")]
    assert client.named("complete") == []


@pytest.mark.asyncio
async def test_event_handler_returning_nothing_completes_empty_batch():
    client = FakeClient({"events": [{"batchId": "b-1", "rawPayload": ""}]})

    async def handler(claim):
        return None

    loop = WorkerLoop(client, [(EVENTS, handler)], heartbeat_interval=60)
    await loop.poll_once()
    await settle(loop)

    assert client.named("complete") == [("complete", "events", "b-1", {"events": []})]


@pytest.mark.asyncio
async def test_bad_handler_result_is_reported_as_failure():
    client = FakeClient({"jobs": [job_claim(4)]})
    strict = QueueBinding(
        name="jobs",
        key_of=JOBS.key_of,
        completion_body=lambda result: {"result": result["required"]},
    )

    async def handler(claim):
        return {}

    loop = WorkerLoop(client, [(strict, handler)], heartbeat_interval=0.01)
    await loop.poll_once()
    await settle(loop)

    assert client.named("fail") == [("fail", "jobs", 4, "KeyError: 'required'")]
    assert client.named("complete") == []
    assert len(loop.registry) == 0


def fake_manager(complete_status=200):
    """MockTransport handler serving one job claim; returns (handler, requests)."""
    requests = []

    def handle(request):
        requests.append(request)
        action = request.url.path.rsplit("/", 1)[-1]
        if action == "claim":
            return httpx.Response(200, json={"data": job_claim(1)})
        if action == "complete" and complete_status != 200:
            return httpx.Response(complete_status, json={"detail": "bad result"})
        return httpx.Response(200, json={"data": {"ok": True}})

    return handle, requests


async def run_one_job(handler, complete_status=200):
    handle, requests = fake_manager(complete_status)
    client = WorkerClient("http://manager", "w1", "secret", transport=httpx.MockTransport(handle))
    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=60)
    await loop.poll_once()
    await settle(loop)
    await client.close()
    return [(r.url.path.rsplit("/", 1)[-1], json.loads(r.content)) for r in requests]


@pytest.mark.asyncio
async def test_unencodable_result_is_reported_as_failure():
    async def handler(claim):
        return {"metadata": {"capturedAt": datetime(2026, 1, 1, tzinfo=timezone.utc)}}

    sent = await run_one_job(handler)

    assert [action for action, _ in sent] == ["claim", "progress", "fail"]
    assert sent[-1][1]["error"].startswith("TypeError: ")


@pytest.mark.asyncio
async def test_rejected_result_is_reported_as_failure():
    async def handler(claim):
        return {"metadata": ["not", "a", "mapping"]}

    sent = await run_one_job(handler, complete_status=422)

    assert [action for action, _ in sent] == ["claim", "progress", "complete", "fail"]
    assert sent[-1][1]["error"].startswith("ResultRejectedError: ")


@pytest.mark.asyncio
async def test_server_error_on_complete_leaves_item_for_the_reaper():
    async def handler(claim):
        return {"proxyPath": "/p/1.mp4"}

    sent = await run_one_job(handler, complete_status=503)

    assert [action for action, _ in sent] == ["claim", "progress", "complete"]


@pytest.mark.asyncio
async def test_progress_reported_before_job_runs():
    client = FakeClient({"jobs": [job_claim(3)]})

    async def handler(claim):
        return {}

    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=60)
    await loop.poll_once()
    await settle(loop)

    names = [c[0] for c in client.calls]
    assert names.index("progress") < names.index("complete")


@pytest.mark.asyncio
async def test_heartbeat_stops_before_completion_is_reported():
    client = FakeClient({"jobs": [job_claim(1)]})

    async def handler(claim):
        await asyncio.sleep(0.08)
        return {}

    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=0.01)
    await loop.poll_once()
    await settle(loop)
    await asyncio.sleep(0.05)

    names = [c[0] for c in client.calls]
    assert "heartbeat" in names
    assert "heartbeat" not in names[names.index("complete"):]


@pytest.mark.asyncio
async def test_lost_lease_stops_heartbeat():
    client = FakeClient({"jobs": [job_claim(1)]})
    client.lost.add(1)
    leases = []

    async def handler(claim):
        leases.append(loop.registry.get("jobs:1"))
        await asyncio.sleep(0.08)
        return {}

    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=0.01)
    await loop.poll_once()
    await settle(loop)

    assert len(client.named("heartbeat")) == 1
    assert leases[0].lost is True
    assert client.named("complete") == []
    assert client.named("fail") == []


@pytest.mark.asyncio
async def test_failed_heartbeat_keeps_trying():
    client = FakeClient({"jobs": [job_claim(1)]})
    client.heartbeat_ok = False

    async def handler(claim):
        await asyncio.sleep(0.08)
        return {}

    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=0.01)
    await loop.poll_once()
    await settle(loop)

    assert len(client.named("heartbeat")) > 1
    assert len(client.named("complete")) == 1


@pytest.mark.asyncio
async def test_sync_handler_runs_off_the_event_loop():
    client = FakeClient({"jobs": [job_claim(1)]})
    main_thread = threading.get_ident()

    def handler(claim):
        return {"thread": threading.get_ident()}

    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=60)
    await loop.poll_once()
    await settle(loop)

    [complete] = client.named("complete")
    assert complete[3]["result"]["thread"] != main_thread


@pytest.mark.asyncio
async def test_middleware_wraps_handler_in_order():
    client = FakeClient({"jobs": [job_claim(1)]})
    order = []

    async def handler(claim):
        order.append("handler")
        return {}

    def tagging(name):
        async def middleware(payload, call_next):
            order.append(f"{name}:before")
            result = await call_next(payload)
            order.append(f"{name}:after")
            return result
        return middleware

    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=60)
    loop.add_middleware(tagging("outer"))
    loop.add_middleware(tagging("inner"))

    await loop.poll_once()
    await settle(loop)

    assert order == ["outer:before", "inner:before", "handler", "inner:after", "outer:after"]


@pytest.mark.asyncio
async def test_stop_waits_for_running_work():
    client = FakeClient({"jobs": [job_claim(1)]})

    async def handler(claim):
        await asyncio.sleep(0.05)
        return {}

    loop = WorkerLoop(client, [(JOBS, handler)], poll_interval=0.01, heartbeat_interval=60, drain_timeout=5)
    runner = asyncio.create_task(loop.run())

    await wait_until(lambda: len(loop.registry) == 1)
    loop.stop()
    await asyncio.wait_for(runner, timeout=2)

    assert len(client.named("complete")) == 1


@pytest.mark.asyncio
async def test_drain_timeout_abandons_without_reporting():
    client = FakeClient({"jobs": [job_claim(1)]})
    release = asyncio.Event()

    async def handler(claim):
        await release.wait()
        return {}

    loop = WorkerLoop(client, [(JOBS, handler)], poll_interval=0.01, heartbeat_interval=60, drain_timeout=0.1)
    runner = asyncio.create_task(loop.run())

    await wait_until(lambda: len(loop.registry) == 1)
    lease = loop.registry.get("jobs:1")

    loop.stop()
    await asyncio.wait_for(runner, timeout=2)

    assert len(loop.registry) == 0
    assert lease.abandoned is True
    assert lease.heartbeat_task.done()

    # A handler that finishes after abandonment must stay silent
    release.set()
    await lease.execution_task
    assert client.named("complete") == []
    assert client.named("fail") == []


@pytest.mark.asyncio
async def test_no_claims_after_stop():
    client = FakeClient({"jobs": [job_claim(1)]})

    async def handler(claim):
        return {}

    loop = WorkerLoop(client, [(JOBS, handler)], heartbeat_interval=60)
    loop.stop()

    assert await loop.poll_once() is False
    assert client.calls == []
