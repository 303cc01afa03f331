from manifold.transport.base import Channel, ChannelFactory, RequestStream
from manifold.transport.http import HttpChannel, http_channel_factory

__all__ = [
    "Channel",
    "ChannelFactory",
    "HttpChannel",
    "RequestStream",
    "http_channel_factory",
]
