from manifold.config.loader import load_api_config, parse_api_config
from manifold.config.models import (
    AffinityCommand,
    AffinityConfig,
    ApiConfig,
    ChannelPoolConfig,
    MethodConfig,
)

__all__ = [
    "AffinityCommand",
    "AffinityConfig",
    "ApiConfig",
    "ChannelPoolConfig",
    "MethodConfig",
    "load_api_config",
    "parse_api_config",
]
