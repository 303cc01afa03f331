"""Affinity-routing channel pool for RPC transports."""

from manifold.affinity import AffinityIndex, AffinityRule, AffinityRuleTable
from manifold.channel import ManagedChannel, PoolState, PoolStats
from manifold.config import AffinityCommand, ApiConfig, load_api_config
from manifold.errors import (
    BindingConflictError,
    ConfigurationError,
    KeyNotFound,
    PoolClosedError,
    PoolInvariantError,
    RpcError,
)
from manifold.transport import Channel, HttpChannel, http_channel_factory

__all__ = [
    "AffinityCommand",
    "AffinityIndex",
    "AffinityRule",
    "AffinityRuleTable",
    "ApiConfig",
    "BindingConflictError",
    "Channel",
    "ConfigurationError",
    "HttpChannel",
    "KeyNotFound",
    "ManagedChannel",
    "PoolClosedError",
    "PoolInvariantError",
    "PoolState",
    "PoolStats",
    "RpcError",
    "http_channel_factory",
    "load_api_config",
]
