import logging
import threading

from manifold.errors import ConfigurationError
from manifold.pool.channel_ref import ChannelRef
from manifold.transport.base import ChannelFactory

logger = logging.getLogger(__name__)


class ChannelPool:
    """Owns the transport channels and picks one for each call.

    Channels are created lazily, in order, up to ``max_size``. Selection packs
    calls onto existing channels: the least-loaded channel is reused while it
    is below ``max_concurrent_calls_per_channel``, a new channel is created
    only when every channel is at that ceiling, and once the pool is full the
    least-loaded channel is used regardless. The ceiling is a preference,
    calls are never refused.
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        max_size: int,
        max_concurrent_calls_per_channel: int,
    ):
        if max_size < 1:
            raise ConfigurationError(f"max_size must be at least 1, got {max_size}")
        if max_concurrent_calls_per_channel < 1:
            raise ConfigurationError(
                "max_concurrent_calls_per_channel must be at least 1, "
                f"got {max_concurrent_calls_per_channel}"
            )

        self._channel_factory = channel_factory
        self._max_size = max_size
        self._max_concurrent_calls = max_concurrent_calls_per_channel
        self._refs: list[ChannelRef] = []
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def max_concurrent_calls_per_channel(self) -> int:
        return self._max_concurrent_calls

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._refs)

    @property
    def channel_refs(self) -> tuple[ChannelRef, ...]:
        """Snapshot of the pool in creation order."""
        with self._lock:
            return tuple(self._refs)

    def acquire(self) -> ChannelRef:
        """Select a channel for a call with no affinity and count the call on it.

        Selection and the active-call increment happen together, so concurrent
        callers see each other's load.
        """
        with self._lock:
            ref = self._select()
            ref.increment_active_calls()
            return ref

    def acquire_ref(self, ref: ChannelRef) -> ChannelRef:
        """Count a call on a specific channel, bypassing selection."""
        ref.increment_active_calls()
        return ref

    def release(self, ref: ChannelRef) -> None:
        """Count a call on ``ref`` as finished."""
        ref.decrement_active_calls()

    def _select(self) -> ChannelRef:
        if self._refs:
            least_loaded = min(
                self._refs, key=lambda r: (r.active_call_count, r.index)
            )
            # A full pool oversubscribes its least-loaded channel
            if (
                least_loaded.active_call_count < self._max_concurrent_calls
                or len(self._refs) >= self._max_size
            ):
                return least_loaded

        return self._grow()

    def _grow(self) -> ChannelRef:
        channel = self._channel_factory()
        ref = ChannelRef(channel, index=len(self._refs))
        self._refs.append(ref)
        logger.debug(f"Created channel {ref.index} ({len(self._refs)}/{self._max_size})")
        return ref

    async def close_all(self) -> None:
        """Close every channel in the pool.

        Failures closing one channel are logged and do not stop the others.
        """
        for ref in self.channel_refs:
            try:
                await ref.channel.close()
            except Exception as e:
                logger.warning(f"Error closing channel {ref.index}: {e}")
