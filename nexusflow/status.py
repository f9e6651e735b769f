"""Execution status snapshots streamed to clients as server-sent events."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .errors import AuthorizationError, NotFoundError, StreamTransportError
from .persistence.models import TERMINAL_STATUSES, Execution, ExecutionStatus
from .persistence.repository import ExecutionStore

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Union[bool, Awaitable[bool]]]


def _counter(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


class ExecutionSnapshot(BaseModel):
    """Complete point-in-time view of an execution as sent on the wire.

    Counters travel as strings and timestamps as ISO-8601; missing values
    are sent as ``null`` rather than omitted.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: ExecutionStatus
    progress: Optional[str] = None
    current_step: Optional[str] = Field(default=None, alias="currentStep")
    total_steps: Optional[str] = Field(default=None, alias="totalSteps")
    error: Optional[str] = None
    output: Any = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")

    @classmethod
    def from_execution(cls, execution: Execution) -> "ExecutionSnapshot":
        return cls(
            id=execution.id,
            status=execution.status,
            progress=_counter(execution.progress),
            current_step=_counter(execution.current_step),
            total_steps=_counter(execution.total_steps),
            error=execution.error,
            output=execution.output,
            created_at=execution.created_at,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def format_sse(snapshot: ExecutionSnapshot) -> str:
    return f"data: {json.dumps(snapshot.to_wire())}\n\n"


async def _is_disconnected(check: Optional[DisconnectCheck]) -> bool:
    if check is None:
        return False
    result = check()
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


class StatusPublisher:
    """Read path turning stored executions into snapshots and SSE frames."""

    def __init__(
        self, store: ExecutionStore, poll_interval: float = 1.0, close_grace: float = 1.0
    ) -> None:
        self.store = store
        self.poll_interval = poll_interval
        self.close_grace = close_grace

    async def snapshot(self, execution_id: str) -> Optional[ExecutionSnapshot]:
        execution = await self.store.get_execution_by_id(execution_id)
        if execution is None:
            return None
        return ExecutionSnapshot.from_execution(execution)

    async def stream(
        self, execution_id: str, is_disconnected: Optional[DisconnectCheck] = None
    ) -> AsyncIterator[str]:
        """Yield SSE frames until the execution is terminal or the client leaves.

        The first frame is sent immediately. Afterwards the store is polled
        every ``poll_interval`` seconds; the stream closes ``close_grace``
        seconds after the first terminal frame.
        """
        snapshot = await self.snapshot(execution_id)
        if snapshot is None:
            return
        yield format_sse(snapshot)

        while not snapshot.is_terminal:
            await asyncio.sleep(self.poll_interval)
            if await _is_disconnected(is_disconnected):
                logger.debug(f"Status stream for {execution_id} disconnected")
                return
            try:
                latest = await self.snapshot(execution_id)
            except Exception:
                logger.exception(f"Failed to poll status of execution {execution_id}")
                continue
            if latest is None:
                logger.warning(f"Execution {execution_id} disappeared while streaming")
                return
            snapshot = latest
            yield format_sse(snapshot)

        await asyncio.sleep(self.close_grace)


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each event in an SSE line stream."""
    buffer: list[str] = []
    async for line in lines:
        if line == "":
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            buffer.append(value[1:] if value.startswith(" ") else value)
    if buffer:
        yield "\n".join(buffer)


class StatusStreamClient:
    """Consume the status stream of an execution over HTTP.

    ``watch`` yields snapshots until a terminal one arrives. A broken
    connection is retried up to ``max_reconnects`` times and then surfaces as
    ``StreamTransportError``.
    """

    def __init__(
        self,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_reconnects: int = 0,
        reconnect_delay: float = 1.0,
    ) -> None:
        self.base_url = base_url
        self.headers = dict(headers or {})
        self._client = client
        self.max_reconnects = max_reconnects
        self.reconnect_delay = reconnect_delay

    def path_for(self, execution_id: str) -> str:
        return f"/jobs/{execution_id}/status"

    async def watch(self, execution_id: str) -> AsyncIterator[ExecutionSnapshot]:
        reconnects = 0
        while True:
            try:
                async for snapshot in self._stream_once(execution_id):
                    yield snapshot
                    if snapshot.is_terminal:
                        return
                return
            except httpx.TransportError as e:
                reconnects += 1
                if reconnects > self.max_reconnects:
                    raise StreamTransportError(f"Status stream broke: {e}") from e
                logger.warning(
                    f"Status stream for {execution_id} broke, reconnecting "
                    f"({reconnects}/{self.max_reconnects})"
                )
                await asyncio.sleep(self.reconnect_delay)

    async def _stream_once(self, execution_id: str) -> AsyncIterator[ExecutionSnapshot]:
        if self._client is not None:
            async for snapshot in self._read(self._client, execution_id):
                yield snapshot
            return
        async with httpx.AsyncClient(base_url=self.base_url, timeout=None) as client:
            async for snapshot in self._read(client, execution_id):
                yield snapshot

    async def _read(
        self, client: httpx.AsyncClient, execution_id: str
    ) -> AsyncIterator[ExecutionSnapshot]:
        async with client.stream(
            "GET", self.path_for(execution_id), headers=self.headers
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                _raise_for_status(response)
            async for data in iter_sse_data(response.aiter_lines()):
                yield ExecutionSnapshot.model_validate(json.loads(data))


def _raise_for_status(response: httpx.Response) -> None:
    try:
        message = response.json().get("error", response.text)
    except ValueError:
        message = response.text
    if response.status_code == 403:
        raise AuthorizationError(message)
    if response.status_code == 404:
        raise NotFoundError(message)
    raise StreamTransportError(f"Status stream returned {response.status_code}: {message}")
