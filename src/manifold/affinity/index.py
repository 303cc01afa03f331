"""Affinity index: which channel each bound key lives on."""

import logging
import threading
from dataclasses import dataclass

from manifold.errors import BindingConflictError, PoolInvariantError
from manifold.pool.channel_ref import ChannelRef

logger = logging.getLogger(__name__)


@dataclass
class AffinityEntry:
    """A bound key. ``refcount`` counts live bindings of the key."""

    key: str
    channel_ref: ChannelRef
    refcount: int = 1


class AffinityIndex:
    """Concurrent mapping from affinity key to (ChannelRef, refcount).

    A key keeps the same ChannelRef for as long as it has an entry. Bind and
    unbind are each atomic, so two racing binds of a new key produce one entry:
    the second bind sees the first entry and only increments its refcount.
    """

    def __init__(self):
        self._entries: dict[str, AffinityEntry] = {}
        self._lock = threading.Lock()

    def lookup(self, key: str) -> ChannelRef | None:
        """Return the channel a key is bound to, or None if unbound."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.channel_ref if entry is not None else None

    def refcount(self, key: str) -> int:
        """Number of live bindings of a key. Zero if unbound."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.refcount if entry is not None else 0

    def bind(self, key: str, channel_ref: ChannelRef) -> int:
        """Record one binding of ``key`` to ``channel_ref``.

        A new key creates an entry and increments the channel's affinity
        count. A key already bound to the same channel only gains a reference.

        Returns:
            The key's refcount after binding

        Raises:
            BindingConflictError: If the key is bound to a different channel
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = AffinityEntry(key=key, channel_ref=channel_ref)
                channel_ref.increment_affinity()
                refcount = 1
            elif entry.channel_ref is not channel_ref:
                error = BindingConflictError(
                    key, entry.channel_ref.index, channel_ref.index
                )
                logger.error(str(error))
                raise error
            else:
                entry.refcount += 1
                refcount = entry.refcount

        logger.debug(
            f"Bound key '{key}' to channel {channel_ref.index} (refcount={refcount})"
        )
        return refcount

    def unbind(self, key: str) -> int | None:
        """Release one binding of ``key``.

        The entry is removed, and its channel's affinity count decremented,
        when the last binding is released. Unbinding an unknown key is a no-op.

        Returns:
            The remaining refcount, or None if the key was not bound
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if entry.refcount <= 0:
                raise PoolInvariantError(
                    f"Affinity entry '{key}' has refcount {entry.refcount}"
                )

            entry.refcount -= 1
            remaining = entry.refcount
            if remaining == 0:
                del self._entries[key]
                entry.channel_ref.decrement_affinity()

        logger.debug(
            f"Unbound key '{key}' from channel {entry.channel_ref.index} "
            f"(refcount={remaining})"
        )
        return remaining

    def snapshot(self) -> dict[str, tuple[ChannelRef, int]]:
        """Point-in-time copy of every entry as key -> (ChannelRef, refcount)."""
        with self._lock:
            return {
                key: (entry.channel_ref, entry.refcount)
                for key, entry in self._entries.items()
            }

    def keys_for(self, channel_ref: ChannelRef) -> list[str]:
        """Keys currently bound to a channel."""
        with self._lock:
            return [
                key
                for key, entry in self._entries.items()
                if entry.channel_ref is channel_ref
            ]

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
