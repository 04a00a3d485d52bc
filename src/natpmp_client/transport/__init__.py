"""Datagram transport package."""
from natpmp_client.transport.channel import (
    DatagramChannel,
    ReceiveOutcome,
    Received,
    TimedOut,
    Failed,
    TransportError,
)
from natpmp_client.transport.udp_transport import UDPGatewayChannel, GatewayProtocol

__all__ = [
    'DatagramChannel',
    'ReceiveOutcome',
    'Received',
    'TimedOut',
    'Failed',
    'TransportError',
    'UDPGatewayChannel',
    'GatewayProtocol',
]
