"""Base transport interface for callbridge.

Transports own one raw message connection: the outbound socket to the
speech-AI provider or the media socket accepted from the telephony
provider. They connect, send, receive and disconnect; they know nothing
about call state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class TransportClosed(ConnectionError):
    """Raised by ``recv``/``send`` once the underlying connection is gone."""


class BaseTransport(ABC):
    """Abstract base class for message transports."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection (no-op for already-accepted sockets)."""
        ...

    @abstractmethod
    async def send(self, data: bytes | str) -> None:
        """Send one binary or text message.

        Raises:
            TransportClosed: If the connection is closed.
        """
        ...

    @abstractmethod
    async def recv(self) -> bytes | str:
        """Receive the next binary or text message.

        Raises:
            TransportClosed: If the connection is closed.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection gracefully. Safe to call more than once."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport is currently connected."""
        ...
