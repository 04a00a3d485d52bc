"""
UDP datagram channel to a NAT-PMP gateway.
"""
import asyncio
import socket
from typing import Optional, Tuple

import structlog

from natpmp_client.protocol import GATEWAY_PORT
from natpmp_client.transport.channel import (
    DatagramChannel,
    Failed,
    Received,
    ReceiveOutcome,
    TimedOut,
    TransportError,
)


class UDPGatewayChannel(DatagramChannel):
    """
    Connected UDP socket to a gateway, driven by asyncio.

    Datagrams are queued by the protocol as they arrive and handed out one
    at a time by receive(). Datagrams from any address other than the
    gateway are dropped.
    """

    def __init__(
        self,
        gateway: str,
        port: int = GATEWAY_PORT,
        local_host: str = "0.0.0.0",
        local_port: int = 0,
        reuse_address: bool = False,
        reuse_port: bool = False,
        queue_size: int = 16,
    ):
        """
        Initialize UDP channel.

        Args:
            gateway: Gateway IPv4 address or host name
            port: Gateway port
            local_host: Local address to bind to
            local_port: Local port to bind to (0 for random)
            reuse_address: Set SO_REUSEADDR before binding
            reuse_port: Set SO_REUSEPORT before binding, where supported
            queue_size: Datagrams buffered between receive() calls
        """
        self.gateway = gateway
        self.port = port
        self.local_host = local_host
        self.local_port = local_port
        self.reuse_address = reuse_address
        self.reuse_port = reuse_port
        self.logger = structlog.get_logger()

        self.remote_addr: Optional[Tuple[str, int]] = None
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.protocol: Optional["GatewayProtocol"] = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

        # Statistics
        self.stats = {
            "datagrams_sent": 0,
            "datagrams_received": 0,
            "datagrams_dropped": 0,
            "bytes_sent": 0,
            "bytes_received": 0,
            "errors": 0,
        }

    @property
    def is_open(self) -> bool:
        return self.transport is not None and not self.transport.is_closing()

    async def start(self):
        """Resolve the gateway, bind the local socket and connect it."""
        loop = asyncio.get_running_loop()

        try:
            addr_info = await loop.getaddrinfo(
                self.gateway, self.port, family=socket.AF_INET, type=socket.SOCK_DGRAM
            )
        except OSError as e:
            raise TransportError(f"Cannot resolve gateway {self.gateway!r}: {e}", e) from e
        self.remote_addr = (addr_info[0][4][0], addr_info[0][4][1])

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            if self.reuse_address:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if self.reuse_port:
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except (AttributeError, OSError) as e:
                    self.logger.debug("reuse_port_unavailable", error=str(e))
            sock.setblocking(False)
            sock.bind((self.local_host, self.local_port))
            sock.connect(self.remote_addr)
            self.transport, self.protocol = await loop.create_datagram_endpoint(
                lambda: GatewayProtocol(self),
                sock=sock,
            )
        except OSError as e:
            sock.close()
            raise TransportError(f"Cannot open channel to {self.gateway}: {e}", e) from e
        except BaseException:
            sock.close()
            raise
        self.local_port = sock.getsockname()[1]

        self.logger.debug(
            "channel_opened",
            gateway=f"{self.remote_addr[0]}:{self.remote_addr[1]}",
            local=f"{self.local_host}:{self.local_port}",
        )

    async def __aenter__(self) -> "UDPGatewayChannel":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    async def send(self, datagram: bytes):
        if not self.is_open:
            raise TransportError(f"Channel to {self.gateway} is not open")

        try:
            self.transport.sendto(datagram)
        except OSError as e:
            self.stats["errors"] += 1
            raise TransportError(f"Send to {self.gateway} failed: {e}", e) from e

        self.stats["datagrams_sent"] += 1
        self.stats["bytes_sent"] += len(datagram)

    async def receive(self, bufsize: int, timeout: float) -> ReceiveOutcome:
        if not self.is_open and self._queue.empty():
            return Failed(TransportError(f"Channel to {self.gateway} is not open"))

        # asyncio.wait rather than wait_for: a get() that completes as the
        # deadline expires must hand its datagram back, not drop it.
        getter = asyncio.ensure_future(self._queue.get())
        try:
            done, _ = await asyncio.wait({getter}, timeout=timeout)
        except asyncio.CancelledError:
            getter.cancel()
            raise

        if not done:
            # A pending get() has not taken anything off the queue yet
            getter.cancel()
            return TimedOut(timeout)

        item = getter.result()

        if isinstance(item, TransportError):
            return Failed(item)
        return Received(item[:bufsize])

    def flush(self):
        discarded = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            discarded += 1
        if discarded:
            self.logger.debug("stale_datagrams_discarded", count=discarded)

    def close(self):
        if self.transport:
            self.transport.close()
            self.transport = None

    def _enqueue(self, item):
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.stats["datagrams_dropped"] += 1
            self.logger.debug("datagram_dropped", reason="queue_full")

    def get_stats(self) -> dict:
        """Get channel statistics."""
        return {
            **self.stats,
            "queued": self._queue.qsize(),
        }


class GatewayProtocol(asyncio.DatagramProtocol):
    """Asyncio UDP protocol handler feeding a UDPGatewayChannel."""

    def __init__(self, channel: UDPGatewayChannel):
        self.channel = channel
        super().__init__()

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        """Queue datagrams coming from the gateway."""
        if self.channel.remote_addr and addr[:2] != self.channel.remote_addr:
            self.channel.stats["datagrams_dropped"] += 1
            self.channel.logger.debug("datagram_from_unexpected_source", source=addr)
            return

        self.channel.stats["datagrams_received"] += 1
        self.channel.stats["bytes_received"] += len(data)
        self.channel._enqueue(data)

    def error_received(self, exc: Exception):
        """ICMP errors (port unreachable and the like) on the connected socket."""
        self.channel.stats["errors"] += 1
        self.channel._enqueue(
            TransportError(f"Gateway {self.channel.gateway} unreachable: {exc}", exc)
        )

    def connection_lost(self, exc: Optional[Exception]):
        if exc is not None:
            self.channel.stats["errors"] += 1
            self.channel._enqueue(TransportError(f"Channel lost: {exc}", exc))
