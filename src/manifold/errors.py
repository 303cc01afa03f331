"""Exception types raised by the channel pool.

Failures from the underlying transport are never wrapped: they reach the
caller exactly as the transport raised them.
"""

from typing import Any


class KeyNotFound(LookupError):
    """Raised when an affinity key path does not resolve inside a message."""

    def __init__(self, key_path: str, reason: str):
        self.key_path = key_path
        self.reason = reason
        super().__init__(f"Affinity key '{key_path}' not found: {reason}")


class PoolInvariantError(AssertionError):
    """Internal pool state is inconsistent. Indicates a bug, not a call failure."""


class BindingConflictError(PoolInvariantError):
    """A BIND resolved an existing key to a different channel than the one
    that served the call."""

    def __init__(self, key: str, bound_index: int, serving_index: int):
        self.key = key
        self.bound_index = bound_index
        self.serving_index = serving_index
        super().__init__(
            f"Affinity key '{key}' is bound to channel {bound_index} "
            f"but was bound again from channel {serving_index}"
        )


class PoolClosedError(RuntimeError):
    """Raised for calls issued after the managed channel began shutting down."""


class ConfigurationError(ValueError):
    """Raised when the API configuration is invalid."""


class RpcError(Exception):
    """Error object returned by a remote JSON-RPC endpoint.

    Raised by the HTTP transport and passed through the pool untouched.
    """

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error {code}: {message}")
