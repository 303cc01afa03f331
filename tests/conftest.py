import asyncio
import itertools
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

import pytest

from manifold.affinity.rules import AffinityRule, AffinityRuleTable
from manifold.channel import ManagedChannel
from manifold.config.models import AffinityCommand
from manifold.transport.base import Channel, RequestStream


class FakeChannel(Channel):
    """In-memory transport channel driven by its factory's settings."""

    def __init__(self, factory: "FakeChannelFactory", index: int):
        self.factory = factory
        self.index = index
        self.calls: list[tuple[str, Any]] = []
        self.closed = False

    async def _enter(self, method: str, request: Any) -> None:
        if self.closed:
            raise ConnectionError("Channel closed")
        self.calls.append((method, request))
        self.factory.started.append(self.index)
        if self.factory.gate is not None:
            await self.factory.gate.wait()
        if self.factory.error is not None:
            raise self.factory.error

    async def unary_unary(self, method: str, request: Any) -> Any:
        await self._enter(method, request)
        return self.factory.responder(method, request)

    async def unary_stream(self, method: str, request: Any) -> AsyncIterator[Any]:
        await self._enter(method, request)
        for response in self.factory.stream_responder(method, request):
            yield response

    async def stream_unary(self, method: str, requests: RequestStream) -> Any:
        collected = await _collect(requests)
        await self._enter(method, collected)
        return self.factory.responder(method, collected[0] if collected else {})

    async def stream_stream(
        self, method: str, requests: RequestStream
    ) -> AsyncIterator[Any]:
        collected = await _collect(requests)
        await self._enter(method, collected)
        for response in self.factory.stream_responder(
            method, collected[0] if collected else {}
        ):
            yield response

    async def close(self) -> None:
        if self.factory.close_gate is not None:
            await self.factory.close_gate.wait()
        self.closed = True
        self.factory.close_count += 1


async def _collect(requests: RequestStream) -> list[Any]:
    if isinstance(requests, AsyncIterable):
        return [r async for r in requests]
    return list(requests)


class FakeChannelFactory:
    """Creates FakeChannels and controls how they behave.

    ``hold()`` makes every call wait until ``release()``, so tests can observe
    the pool while calls are in flight.
    """

    def __init__(self):
        self.channels: list[FakeChannel] = []
        self.started: list[int] = []
        self.gate: asyncio.Event | None = None
        self.error: BaseException | None = None
        self.close_count = 0
        self.close_gate: asyncio.Event | None = None
        self._session_ids = itertools.count(1)
        self.responder: Callable[[str, Any], Any] = self.default_responder
        self.stream_responder: Callable[[str, Any], list[Any]] = (
            self.default_stream_responder
        )

    def __call__(self) -> FakeChannel:
        channel = FakeChannel(self, index=len(self.channels))
        self.channels.append(channel)
        return channel

    def hold(self) -> None:
        self.gate = asyncio.Event()

    def release(self) -> None:
        assert self.gate is not None
        self.gate.set()

    def default_responder(self, method: str, request: Any) -> Any:
        if method.endswith("CreateSession"):
            name = request.get("name") or f"sessions/{next(self._session_ids)}"
            return {"name": name}
        return {"method": method}

    def default_stream_responder(self, method: str, request: Any) -> list[Any]:
        return [{"row": 0}, {"row": 1}]


CREATE_SESSION = "test.Sessions/CreateSession"
GET_SESSION = "test.Sessions/GetSession"
EXECUTE_SQL = "test.Sessions/ExecuteSql"
EXECUTE_STREAMING_SQL = "test.Sessions/ExecuteStreamingSql"
DELETE_SESSION = "test.Sessions/DeleteSession"
BATCH_CREATE_SESSIONS = "test.Sessions/BatchCreateSessions"


@pytest.fixture
def factory():
    return FakeChannelFactory()


@pytest.fixture
def rules():
    return AffinityRuleTable(
        [
            AffinityRule(CREATE_SESSION, AffinityCommand.BIND, "name"),
            AffinityRule(GET_SESSION, AffinityCommand.BOUND, "name"),
            AffinityRule(EXECUTE_SQL, AffinityCommand.BOUND, "session"),
            AffinityRule(EXECUTE_STREAMING_SQL, AffinityCommand.BOUND, "session"),
            AffinityRule(DELETE_SESSION, AffinityCommand.UNBIND, "name"),
            AffinityRule(BATCH_CREATE_SESSIONS, AffinityCommand.BIND, "session.name"),
        ]
    )


@pytest.fixture
async def make_channel(factory, rules):
    """Build ManagedChannels over the fake factory and shut them down after."""
    created: list[ManagedChannel] = []

    def make(max_size: int = 3, max_concurrent: int = 2) -> ManagedChannel:
        channel = ManagedChannel(
            factory,
            rules=rules,
            max_size=max_size,
            max_concurrent_calls_per_channel=max_concurrent,
        )
        created.append(channel)
        return channel

    yield make

    if factory.gate is not None:
        factory.gate.set()
    if factory.close_gate is not None:
        factory.close_gate.set()
    for channel in created:
        await channel.shutdown_now()


async def yield_to_event_loop(seconds: float = 0.01) -> None:
    """Let pending tasks run up to their next suspension point."""
    await asyncio.sleep(seconds)


@pytest.fixture
def yield_loop():
    return yield_to_event_loop
