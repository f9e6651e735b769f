import json
import uuid
from datetime import datetime, timezone

import httpx
import pytest

from nexusflow.errors import AuthorizationError, NotFoundError, StreamTransportError
from nexusflow.persistence import ExecutionStatus
from nexusflow.status import (
    ExecutionSnapshot,
    StatusPublisher,
    StatusStreamClient,
    format_sse,
    iter_sse_data,
)


def _decode(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


async def _execution(store, status=ExecutionStatus.RUNNING, **fields):
    execution = await store.create_execution(str(uuid.uuid4()), "org-x", "user-a", {"text": "abc"})
    return await store.update_execution_status(execution.id, status, **fields)


@pytest.mark.asyncio
async def test_snapshot_wire_format(store):
    started = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    execution = await _execution(
        store, progress=50, current_step=2, total_steps=4, started_at=started
    )

    wire = (await StatusPublisher(store).snapshot(execution.id)).to_wire()

    assert wire["id"] == execution.id
    assert wire["status"] == "running"
    assert wire["progress"] == "50"
    assert wire["currentStep"] == "2"
    assert wire["totalSteps"] == "4"
    assert wire["startedAt"].startswith("2024-05-01T12:00:00")
    assert wire["completedAt"] is None
    assert wire["error"] is None
    assert wire["output"] is None
    assert "createdAt" in wire


@pytest.mark.asyncio
async def test_snapshot_of_missing_execution_is_none(store):
    assert await StatusPublisher(store).snapshot("nope") is None


@pytest.mark.asyncio
async def test_terminal_execution_streams_one_frame(store):
    execution = await _execution(store, ExecutionStatus.COMPLETED, output={"summary": "x"})
    publisher = StatusPublisher(store, poll_interval=0.01, close_grace=0)

    frames = [frame async for frame in publisher.stream(execution.id)]

    assert len(frames) == 1
    payload = _decode(frames[0])
    assert payload["status"] == "completed"
    assert payload["output"] == {"summary": "x"}


@pytest.mark.asyncio
async def test_stream_follows_execution_until_terminal(store):
    execution = await _execution(store, ExecutionStatus.PENDING)
    publisher = StatusPublisher(store, poll_interval=0.01, close_grace=0)
    stream = publisher.stream(execution.id)

    first = _decode(await stream.__anext__())
    await store.update_execution_status(
        execution.id, ExecutionStatus.RUNNING, progress=50, current_step=2, total_steps=4
    )
    second = _decode(await stream.__anext__())
    await store.update_execution_status(
        execution.id, ExecutionStatus.COMPLETED, progress=100, current_step=4
    )
    third = _decode(await stream.__anext__())

    assert [first["status"], second["status"], third["status"]] == [
        "pending",
        "running",
        "completed",
    ]
    assert second["progress"] == "50"
    assert third["currentStep"] == "4"
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_stream_stops_when_client_disconnects(store):
    execution = await _execution(store)
    publisher = StatusPublisher(store, poll_interval=0.01, close_grace=0)

    async def gone():
        return True

    frames = [frame async for frame in publisher.stream(execution.id, gone)]
    assert len(frames) == 1


@pytest.mark.asyncio
async def test_stream_for_unknown_execution_is_empty(store):
    publisher = StatusPublisher(store, poll_interval=0.01, close_grace=0)
    assert [frame async for frame in publisher.stream("nope")] == []


@pytest.mark.asyncio
async def test_iter_sse_data_skips_comments_and_joins_lines():
    async def lines():
        for line in [": keep-alive", "data: {\"a\":", "data: 1}", "", "event: x", "data: 2"]:
            yield line

    assert [data async for data in iter_sse_data(lines())] == ['{"a":\n1}', "2"]


def _frame(status: str, **fields) -> str:
    return format_sse(ExecutionSnapshot(id="e1", status=status, **fields))


@pytest.mark.asyncio
async def test_stream_client_yields_until_terminal():
    body = _frame("running", progress="50") + _frame("completed", progress="100")

    def handler(request):
        assert request.url.path == "/jobs/e1/status"
        assert request.headers["x-user-id"] == "user-a"
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://test"
    ) as client:
        watcher = StatusStreamClient(headers={"X-User-Id": "user-a"}, client=client)
        snapshots = [s async for s in watcher.watch("e1")]

    assert [s.status for s in snapshots] == [ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED]
    assert snapshots[-1].progress == "100"


@pytest.mark.asyncio
async def test_stream_client_reconnects_after_transport_error():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text=_frame("failed", error="boom"))

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://test"
    ) as client:
        watcher = StatusStreamClient(client=client, max_reconnects=1, reconnect_delay=0)
        snapshots = [s async for s in watcher.watch("e1")]

    assert len(attempts) == 2
    assert snapshots[0].error == "boom"


@pytest.mark.asyncio
async def test_stream_client_gives_up_after_reconnects():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://test"
    ) as client:
        watcher = StatusStreamClient(client=client, max_reconnects=0)
        with pytest.raises(StreamTransportError):
            [s async for s in watcher.watch("e1")]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,error",
    [(403, AuthorizationError), (404, NotFoundError), (500, StreamTransportError)],
)
async def test_stream_client_maps_error_responses(status_code, error):
    def handler(request):
        return httpx.Response(status_code, json={"error": "Access denied", "kind": "forbidden"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://test"
    ) as client:
        watcher = StatusStreamClient(client=client)
        with pytest.raises(error, match="Access denied"):
            [s async for s in watcher.watch("e1")]
