"""
NAT-PMP client - external address discovery and port mapping (RFC 6886).

This package provides:
- A byte-exact codec for NAT-PMP requests and responses
- An asyncio client that retransmits with exponential backoff
- A UDP channel to the gateway
- A command-line tool (`natpmp`)
"""

__version__ = "0.1.0"

from natpmp_client.client import NatPMPClient, GatewayUnresponsive
from natpmp_client.config import ClientConfig
from natpmp_client.protocol import (
    AddressResponse,
    ConstructionError,
    MalformedResponse,
    MappingRequest,
    MappingResponse,
    NATPMPError,
    Operation,
    ResultCode,
)
from natpmp_client.transport import TransportError

__all__ = [
    "NatPMPClient",
    "GatewayUnresponsive",
    "ClientConfig",
    "AddressResponse",
    "ConstructionError",
    "MalformedResponse",
    "MappingRequest",
    "MappingResponse",
    "NATPMPError",
    "Operation",
    "ResultCode",
    "TransportError",
]
