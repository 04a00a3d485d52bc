"""
Datagram channel contract used by the client.

The client never touches sockets directly. It sends whole datagrams and
asks for the next one with a deadline; the answer is a ReceiveOutcome
rather than an exception, so the retransmission loop can branch on it.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Union

from natpmp_client.protocol import NATPMPError


class TransportError(NATPMPError):
    """The underlying datagram transport failed (unreachable, refused, closed)."""

    def __init__(self, message: str, cause: Exception = None):
        super().__init__(message)
        self.cause = cause


@dataclass(frozen=True)
class Received:
    """A datagram arrived before the deadline."""
    data: bytes


@dataclass(frozen=True)
class TimedOut:
    """Nothing arrived within `timeout` seconds."""
    timeout: float


@dataclass(frozen=True)
class Failed:
    """The transport reported a definite error."""
    error: TransportError


ReceiveOutcome = Union[Received, TimedOut, Failed]


class DatagramChannel(ABC):
    """A connected, unreliable datagram path to a single gateway."""

    @abstractmethod
    async def send(self, datagram: bytes):
        """
        Send one datagram.

        Raises:
            TransportError: the datagram could not be handed to the network
        """

    @abstractmethod
    async def receive(self, bufsize: int, timeout: float) -> ReceiveOutcome:
        """
        Wait up to `timeout` seconds for the next datagram.

        Args:
            bufsize: Maximum number of bytes to return
            timeout: Deadline in seconds
        """

    def flush(self):
        """Discard datagrams that arrived while nobody was waiting."""

    def close(self):
        """Release the channel."""
