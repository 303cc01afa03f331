import threading

from manifold.errors import PoolInvariantError
from manifold.transport.base import Channel


class ChannelRef:
    """One transport channel owned by the pool, with its load counters.

    ``active_call_count`` tracks calls currently dispatched on the channel and
    ``affinity_count`` the number of distinct affinity keys bound to it. Both
    are updated atomically and may be read from any thread.
    """

    def __init__(self, channel: Channel, index: int):
        self._channel = channel
        self._index = index
        self._active_call_count = 0
        self._affinity_count = 0
        self._lock = threading.Lock()

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def index(self) -> int:
        """Creation order within the pool."""
        return self._index

    @property
    def active_call_count(self) -> int:
        with self._lock:
            return self._active_call_count

    @property
    def affinity_count(self) -> int:
        with self._lock:
            return self._affinity_count

    def increment_active_calls(self) -> int:
        with self._lock:
            self._active_call_count += 1
            return self._active_call_count

    def decrement_active_calls(self) -> int:
        with self._lock:
            if self._active_call_count == 0:
                raise PoolInvariantError(
                    f"Active call count of channel {self._index} would go negative"
                )
            self._active_call_count -= 1
            return self._active_call_count

    def increment_affinity(self) -> int:
        with self._lock:
            self._affinity_count += 1
            return self._affinity_count

    def decrement_affinity(self) -> int:
        with self._lock:
            if self._affinity_count == 0:
                raise PoolInvariantError(
                    f"Affinity count of channel {self._index} would go negative"
                )
            self._affinity_count -= 1
            return self._affinity_count

    def __repr__(self) -> str:
        return (
            f"ChannelRef(index={self._index}, "
            f"active_calls={self.active_call_count}, "
            f"affinities={self.affinity_count})"
        )
