from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from types import TracebackType
from typing import Any, Self

RequestStream = Iterable[Any] | AsyncIterable[Any]


class Channel(ABC):
    """A single physical transport channel.

    The pool only decides which channel carries a call. Connecting, framing,
    serialization and timeouts all belong to the channel. Each call completes
    exactly once: the coroutine returns or raises, and a response stream ends
    or raises.

    Failures are raised as-is and the pool passes them through unchanged.
    """

    @abstractmethod
    async def unary_unary(self, method: str, request: Any) -> Any:
        """Send one request and return one response.

        Args:
            method: Fully-qualified method name
            request: Request message

        Raises:
            ConnectionError: If the channel is closed or the connection failed
        """

    @abstractmethod
    def unary_stream(self, method: str, request: Any) -> AsyncIterator[Any]:
        """Send one request and stream back responses.

        The iterator ends when the remote side completes the stream.
        """

    @abstractmethod
    async def stream_unary(self, method: str, requests: RequestStream) -> Any:
        """Send a sequence of requests and return one response."""

    @abstractmethod
    def stream_stream(self, method: str, requests: RequestStream) -> AsyncIterator[Any]:
        """Send a sequence of requests and stream back responses."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and release its connections.

        Must be safe to call more than once.
        """

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
        return None


ChannelFactory = Callable[[], Channel]
"""Creates a new transport channel each time it is called."""
