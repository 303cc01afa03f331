"""Managed channel: one logical channel backed by a pool of transport channels.

Every call is routed to a single pooled channel. Calls whose method has a
BOUND or UNBIND rule go to the channel their request's affinity key is bound
to, when it is bound. Everything else is placed by the pool's least-loaded
selection. Successful BIND calls bind the key found in the response to the
channel that served them; successful UNBIND calls release the key found in
the request.
"""

import asyncio
import itertools
import logging
import threading
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Self

from manifold.affinity.index import AffinityIndex
from manifold.affinity.keys import extract_key
from manifold.affinity.rules import AffinityRule, AffinityRuleTable
from manifold.config.models import AffinityCommand, ApiConfig
from manifold.errors import KeyNotFound, PoolClosedError
from manifold.pool.channel_pool import ChannelPool
from manifold.pool.channel_ref import ChannelRef
from manifold.transport.base import ChannelFactory, RequestStream

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 10
DEFAULT_MAX_CONCURRENT_CALLS_PER_CHANNEL = 100

_EMPTY = object()


class PoolState(str, Enum):
    IDLE = "idle"
    """No transport channel created yet."""

    ACTIVE = "active"
    """At least one transport channel exists and calls are accepted."""

    SHUTTING_DOWN = "shutting_down"
    """In-flight calls may finish. New calls are refused."""

    CLOSED = "closed"
    """All transport channels are closed."""


@dataclass(frozen=True)
class ChannelStats:
    index: int
    active_call_count: int
    affinity_count: int


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time view of the pool for operators and tests."""

    state: PoolState
    pool_size: int
    affinity_key_count: int
    channels: tuple[ChannelStats, ...]

    @property
    def active_call_count(self) -> int:
        return sum(c.active_call_count for c in self.channels)


class ManagedChannel:
    """Presents a pool of transport channels as a single channel.

    Args:
        channel_factory: Creates a transport channel when the pool grows
        rules: Affinity rules by method. Methods without a rule are routed by
            load only.
        max_size: Maximum number of transport channels
        max_concurrent_calls_per_channel: Active calls per channel above which
            the pool grows instead of reusing a channel
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        rules: AffinityRuleTable | Iterable[AffinityRule] | None = None,
        max_size: int = DEFAULT_MAX_SIZE,
        max_concurrent_calls_per_channel: int = DEFAULT_MAX_CONCURRENT_CALLS_PER_CHANNEL,
    ):
        if isinstance(rules, AffinityRuleTable):
            self._rules = rules
        else:
            self._rules = AffinityRuleTable(rules or ())

        self._pool = ChannelPool(
            channel_factory,
            max_size=max_size,
            max_concurrent_calls_per_channel=max_concurrent_calls_per_channel,
        )
        self._affinity_index = AffinityIndex()

        self._lifecycle_lock = threading.Lock()
        self._in_flight = 0
        self._closing = False
        self._closed = False
        self._drained = asyncio.Event()
        self._shutdown_task: asyncio.Future[None] | None = None
        self._close_task: asyncio.Future[None] | None = None

    @classmethod
    def from_config(
        cls, channel_factory: ChannelFactory, config: ApiConfig
    ) -> "ManagedChannel":
        """Create a managed channel from a parsed API config."""
        return cls(
            channel_factory,
            rules=AffinityRuleTable.from_config(config),
            max_size=config.channel_pool.max_size,
            max_concurrent_calls_per_channel=(
                config.channel_pool.max_concurrent_streams_low_watermark
            ),
        )

    # ================================
    # Diagnostics
    # ================================

    @property
    def rules(self) -> AffinityRuleTable:
        return self._rules

    @property
    def affinity_index(self) -> AffinityIndex:
        return self._affinity_index

    @property
    def channel_refs(self) -> tuple[ChannelRef, ...]:
        """Snapshot of the pooled channels in creation order."""
        return self._pool.channel_refs

    @property
    def pool_size(self) -> int:
        return self._pool.size

    @property
    def max_size(self) -> int:
        return self._pool.max_size

    @property
    def max_concurrent_calls_per_channel(self) -> int:
        return self._pool.max_concurrent_calls_per_channel

    @property
    def affinity_key_count(self) -> int:
        """Number of distinct keys currently bound."""
        return len(self._affinity_index)

    @property
    def state(self) -> PoolState:
        with self._lifecycle_lock:
            if self._closed:
                return PoolState.CLOSED
            if self._closing:
                return PoolState.SHUTTING_DOWN
        return PoolState.IDLE if self._pool.size == 0 else PoolState.ACTIVE

    def stats(self) -> PoolStats:
        channels = tuple(
            ChannelStats(
                index=ref.index,
                active_call_count=ref.active_call_count,
                affinity_count=ref.affinity_count,
            )
            for ref in self._pool.channel_refs
        )
        return PoolStats(
            state=self.state,
            pool_size=len(channels),
            affinity_key_count=self.affinity_key_count,
            channels=channels,
        )

    # ================================
    # Calls
    # ================================

    async def unary_unary(self, method: str, request: Any) -> Any:
        """Issue a single-request, single-response call."""
        self._begin_call()
        try:
            rule = self._rules.rule_for(method)
            ref = self._acquire(method, rule, self._request_key(rule, request))
            try:
                response = await ref.channel.unary_unary(method, request)
                self._apply_affinity(rule, ref, request, response)
                return response
            finally:
                self._pool.release(ref)
        finally:
            self._end_call()

    async def unary_stream(self, method: str, request: Any) -> AsyncIterator[Any]:
        """Issue a single-request call and stream its responses."""
        self._begin_call()
        try:
            rule = self._rules.rule_for(method)
            ref = self._acquire(method, rule, self._request_key(rule, request))
            try:
                responses = ref.channel.unary_stream(method, request)
                tracked = self._track_stream(rule, ref, request, responses)
                async with aclosing(tracked):
                    async for response in tracked:
                        yield response
            finally:
                self._pool.release(ref)
        finally:
            self._end_call()

    async def stream_unary(self, method: str, requests: RequestStream) -> Any:
        """Send a sequence of requests and return one response.

        Request-side affinity keys are read from the first request.
        """
        self._begin_call()
        try:
            rule = self._rules.rule_for(method)
            first, requests = await self._peek_requests(rule, requests)
            ref = self._acquire(method, rule, self._request_key(rule, first))
            try:
                response = await ref.channel.stream_unary(method, requests)
                self._apply_affinity(rule, ref, first, response)
                return response
            finally:
                self._pool.release(ref)
        finally:
            self._end_call()

    async def stream_stream(
        self, method: str, requests: RequestStream
    ) -> AsyncIterator[Any]:
        """Send a sequence of requests and stream the responses."""
        self._begin_call()
        try:
            rule = self._rules.rule_for(method)
            first, requests = await self._peek_requests(rule, requests)
            ref = self._acquire(method, rule, self._request_key(rule, first))
            try:
                responses = ref.channel.stream_stream(method, requests)
                tracked = self._track_stream(rule, ref, first, responses)
                async with aclosing(tracked):
                    async for response in tracked:
                        yield response
            finally:
                self._pool.release(ref)
        finally:
            self._end_call()

    def future(self, method: str, request: Any) -> asyncio.Future[Any]:
        """Start a unary call and return a future for its response.

        Cancelling the future cancels the call. Must be called from a running
        event loop.
        """
        return asyncio.ensure_future(self.unary_unary(method, request))

    # ================================
    # Routing
    # ================================

    def _acquire(
        self, method: str, rule: AffinityRule | None, key: str | None
    ) -> ChannelRef:
        if key is not None:
            bound_ref = self._affinity_index.lookup(key)
            if bound_ref is not None:
                logger.debug(
                    f"Routing {method} to channel {bound_ref.index} by key '{key}'"
                )
                return self._pool.acquire_ref(bound_ref)
            logger.debug(f"Key '{key}' for {method} is not bound, selecting by load")

        ref = self._pool.acquire()
        logger.debug(f"Routing {method} to channel {ref.index} by load")
        return ref

    def _request_key(self, rule: AffinityRule | None, request: Any) -> str | None:
        if rule is None or not rule.reads_request or request is _EMPTY:
            return None
        return self._extract(rule, request)

    def _extract(self, rule: AffinityRule, message: Any) -> str | None:
        try:
            return extract_key(message, rule.key_path)
        except KeyNotFound as e:
            logger.debug(f"No affinity key for {rule.method}: {e}")
            return None

    def _apply_affinity(
        self,
        rule: AffinityRule | None,
        ref: ChannelRef,
        request: Any,
        response: Any,
    ) -> None:
        if rule is None:
            return

        if rule.command is AffinityCommand.BIND:
            key = self._extract(rule, response)
            if key is not None:
                self._affinity_index.bind(key, ref)
        elif rule.command is AffinityCommand.UNBIND:
            key = self._request_key(rule, request)
            if key is not None:
                self._affinity_index.unbind(key)

    async def _track_stream(
        self,
        rule: AffinityRule | None,
        ref: ChannelRef,
        request: Any,
        responses: AsyncIterator[Any],
    ) -> AsyncIterator[Any]:
        """Relay a response stream, applying affinity once it completes.

        BIND keys come from the first response that carries one. Nothing is
        applied if the stream fails or the consumer stops early.
        """
        bind_source: Any = _EMPTY
        binds = rule is not None and rule.command is AffinityCommand.BIND

        async with aclosing(responses):
            async for response in responses:
                if binds and bind_source is _EMPTY:
                    try:
                        extract_key(response, rule.key_path)
                        bind_source = response
                    except KeyNotFound:
                        pass
                yield response

        if binds:
            if bind_source is _EMPTY:
                logger.debug(f"No affinity key in any response of {rule.method}")
                return
            self._apply_affinity(rule, ref, request, bind_source)
        else:
            self._apply_affinity(rule, ref, request, None)

    async def _peek_requests(
        self, rule: AffinityRule | None, requests: RequestStream
    ) -> tuple[Any, RequestStream]:
        """Take the first request when the rule needs it, without losing it."""
        if rule is None or not rule.reads_request:
            return _EMPTY, requests

        if isinstance(requests, AsyncIterable):
            iterator = aiter(requests)
            first = await anext(iterator, _EMPTY)
            if first is _EMPTY:
                return _EMPTY, _replay((), iterator)
            return first, _replay((first,), iterator)

        iterator = iter(requests)
        first = next(iterator, _EMPTY)
        if first is _EMPTY:
            return _EMPTY, ()
        return first, itertools.chain((first,), iterator)

    # ================================
    # Lifecycle
    # ================================

    def _begin_call(self) -> None:
        with self._lifecycle_lock:
            if self._closing:
                raise PoolClosedError("Managed channel is shut down")
            self._in_flight += 1

    def _end_call(self) -> None:
        with self._lifecycle_lock:
            self._in_flight -= 1
            drained = self._closing and self._in_flight == 0
        if drained:
            self._drained.set()

    def _in_flight_count(self) -> int:
        with self._lifecycle_lock:
            return self._in_flight

    async def shutdown(self, grace: float | None = None) -> None:
        """Stop accepting calls, let in-flight calls finish, then close channels.

        Safe to call multiple times and from concurrent tasks; every caller
        waits until all channels are closed.

        Args:
            grace: Seconds to wait for in-flight calls. None waits indefinitely.
        """
        with self._lifecycle_lock:
            if self._shutdown_task is None:
                self._closing = True
                if self._in_flight == 0:
                    self._drained.set()
                self._shutdown_task = asyncio.ensure_future(
                    self._drain_and_close(grace)
                )
                logger.info(
                    f"Shutting down managed channel ({self._in_flight} calls in flight)"
                )
            task = self._shutdown_task
        await asyncio.shield(task)

    async def shutdown_now(self) -> None:
        """Stop accepting calls and close every channel immediately.

        In-flight calls fail with whatever error their transport raises. A
        pending ``shutdown()`` stops waiting for them.
        """
        with self._lifecycle_lock:
            self._closing = True
        self._drained.set()
        logger.info(
            f"Closing managed channel now ({self._in_flight_count()} calls in flight)"
        )
        await self._close_channels()

    async def _drain_and_close(self, grace: float | None) -> None:
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(
                f"Shutdown grace period of {grace}s expired with "
                f"{self._in_flight_count()} calls in flight"
            )
        await self._close_channels()

    async def _close_channels(self) -> None:
        """Close the pool once. Every caller waits for the same close."""
        with self._lifecycle_lock:
            if self._close_task is None:
                self._close_task = asyncio.ensure_future(self._close_all())
            task = self._close_task
        await asyncio.shield(task)

    async def _close_all(self) -> None:
        await self._pool.close_all()

        with self._lifecycle_lock:
            self._closed = True
        logger.info(f"Managed channel closed ({self._pool.size} channels released)")

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()
        return None


async def _replay(head: Iterable[Any], rest: AsyncIterator[Any]) -> AsyncIterator[Any]:
    for item in head:
        yield item
    async for item in rest:
        yield item
