"""
Shared fixtures: a scripted datagram channel and an in-process gateway.
"""
import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio
import structlog

from natpmp_client.protocol import (
    Operation,
    decode_request,
    encode_address_response,
    encode_mapping_response,
)
from natpmp_client.transport import (
    DatagramChannel,
    Failed,
    Received,
    TimedOut,
    TransportError,
)


class ScriptedChannel(DatagramChannel):
    """
    Channel whose receive() outcomes are scripted in advance.

    Script entries are bytes (delivered), None (timeout) or a
    TransportError (failure). Running off the end of the script times out.
    """

    def __init__(self, script: Optional[list] = None):
        self.script = list(script or [])
        self.sent: List[bytes] = []
        self.timeouts: List[float] = []
        self.flushed = 0
        self.closed = False

    async def send(self, datagram: bytes):
        self.sent.append(bytes(datagram))

    async def receive(self, bufsize: int, timeout: float):
        self.timeouts.append(timeout)
        item = self.script.pop(0) if self.script else None
        if item is None:
            return TimedOut(timeout)
        if isinstance(item, TransportError):
            return Failed(item)
        return Received(item[:bufsize])

    def flush(self):
        self.flushed += 1

    def close(self):
        self.closed = True


class FakeGatewayProtocol(asyncio.DatagramProtocol):
    """
    Minimal NAT-PMP responder for tests.

    Grants every mapping as requested and reports a fixed external address.
    `drop` requests are ignored before answering.
    """

    def __init__(self, external_address="203.0.113.7", epoch=1000, drop=0):
        self.external_address = external_address
        self.epoch = epoch
        self.drop = drop
        self.requests: List[bytes] = []
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.requests.append(data)
        if self.drop:
            self.drop -= 1
            return

        request = decode_request(data)
        if request is Operation.ADDRESS:
            reply = encode_address_response(0, self.epoch, self.external_address)
        else:
            reply = encode_mapping_response(
                request.operation,
                0,
                self.epoch,
                request.internal_port,
                request.external_port,
                request.lifetime,
            )
        self.transport.sendto(reply, addr)


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo any logging configuration a test (e.g. the CLI) installed."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def scripted_channel():
    """Factory for scripted channels."""
    return ScriptedChannel


@pytest_asyncio.fixture
async def fake_gateway():
    """Fake gateway bound to an ephemeral port on 127.0.0.1."""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        FakeGatewayProtocol,
        local_addr=("127.0.0.1", 0),
    )
    protocol.port = transport.get_extra_info("sockname")[1]
    yield protocol
    transport.close()
