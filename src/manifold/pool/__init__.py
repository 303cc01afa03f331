from manifold.pool.channel_pool import ChannelPool
from manifold.pool.channel_ref import ChannelRef

__all__ = ["ChannelPool", "ChannelRef"]
