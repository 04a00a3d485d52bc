"""
NAT-PMP wire format (RFC 6886).

Fixed-width, big-endian request and response frames exchanged with a
gateway on UDP port 5351. Every frame kind is described once by a
FieldLayout and packed/unpacked through it.
"""
import ipaddress
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple, Union


NATPMP_VERSION = 0
GATEWAY_PORT = 5351
CLIENT_PORT = 5350  # address-change announcements (multicast 224.0.0.1)
RESPONSE_BIT = 0x80
OPCODE_FAMILY_MASK = 0x7F
DEFAULT_LIFETIME = 7200

MAX_PORT = 0xFFFF
MAX_LIFETIME = 0xFFFFFFFF


class NATPMPError(Exception):
    """Base class for every error raised by this package."""


class ConstructionError(NATPMPError, ValueError):
    """Request parameters are invalid; nothing was sent."""


class MalformedResponse(NATPMPError):
    """A datagram arrived but does not have the shape of the expected response."""

    def __init__(self, message: str, data: bytes = b""):
        super().__init__(message)
        self.data = bytes(data)


class MalformedRequest(NATPMPError):
    """A datagram does not have the shape of a client request."""


class ResultCode(IntEnum):
    """Result codes carried in bytes 2-3 of every response."""
    SUCCESS = 0
    UNSUPPORTED_VERSION = 1
    NOT_AUTHORIZED = 2          # Not authorized / refused (e.g. mapping disabled)
    NETWORK_FAILURE = 3         # Gateway has no DHCP lease yet, etc.
    OUT_OF_RESOURCES = 4        # Cannot create more mappings
    UNSUPPORTED_OPCODE = 5

    @classmethod
    def coerce(cls, value: int) -> Union["ResultCode", int]:
        """
        Map a wire value to a ResultCode member.

        Codes this client does not know are returned as the raw integer so
        that newer gateways are not rejected.
        """
        try:
            return cls(value)
        except ValueError:
            return int(value)


class Operation(IntEnum):
    """Request opcodes. Responses carry the same value with RESPONSE_BIT set."""
    ADDRESS = 0
    MAP_UDP = 1
    MAP_TCP = 2

    @property
    def response_opcode(self) -> int:
        return self | RESPONSE_BIT

    @property
    def is_mapping(self) -> bool:
        return self in (Operation.MAP_UDP, Operation.MAP_TCP)

    @property
    def protocol_name(self) -> str:
        return {
            Operation.ADDRESS: "address",
            Operation.MAP_UDP: "udp",
            Operation.MAP_TCP: "tcp",
        }[self]

    @classmethod
    def from_name(cls, name: str) -> "Operation":
        """Resolve "udp" / "tcp" (case-insensitive) to a mapping operation."""
        lookup = {"udp": cls.MAP_UDP, "tcp": cls.MAP_TCP}
        try:
            return lookup[name.strip().lower()]
        except (KeyError, AttributeError):
            raise ConstructionError(
                f"Unknown mapping protocol {name!r}, expected 'udp' or 'tcp'"
            ) from None


class FieldLayout:
    """
    Declarative fixed-size frame layout.

    Fields are given in wire order as (name, struct format code) pairs and
    are always packed in network byte order.
    """

    def __init__(self, *fields: Tuple[str, str]):
        self.fields = tuple(fields)
        self.names = tuple(name for name, _ in self.fields)
        self._struct = struct.Struct("!" + "".join(code for _, code in self.fields))

        self.offsets = {}
        offset = 0
        for name, code in self.fields:
            self.offsets[name] = offset
            offset += struct.calcsize("!" + code)

    @property
    def size(self) -> int:
        return self._struct.size

    def field_slice(self, name: str) -> slice:
        """Byte range occupied by a field."""
        start = self.offsets[name]
        code = dict(self.fields)[name]
        return slice(start, start + struct.calcsize("!" + code))

    def pack(self, **values) -> bytes:
        missing = set(self.names) - set(values)
        if missing:
            raise ConstructionError(f"Missing frame fields: {sorted(missing)}")
        try:
            return self._struct.pack(*(values[name] for name in self.names))
        except struct.error as e:
            raise ConstructionError(f"Field out of range: {e}") from e

    def unpack(self, data: bytes) -> dict:
        return dict(zip(self.names, self._struct.unpack(data)))


REQUEST_LAYOUT = FieldLayout(
    ("version", "B"),
    ("opcode", "B"),
    ("reserved", "H"),
    ("internal_port", "H"),
    ("external_port", "H"),
    ("lifetime", "I"),
)

ADDRESS_RESPONSE_LAYOUT = FieldLayout(
    ("version", "B"),
    ("opcode", "B"),
    ("result_code", "H"),
    ("epoch", "I"),
    ("external_address", "4s"),
)

MAPPING_RESPONSE_LAYOUT = FieldLayout(
    ("version", "B"),
    ("opcode", "B"),
    ("result_code", "H"),
    ("epoch", "I"),
    ("internal_port", "H"),
    ("external_port", "H"),
    ("lifetime", "I"),
)

REQUEST_SIZE = REQUEST_LAYOUT.size                        # 12
ADDRESS_RESPONSE_SIZE = ADDRESS_RESPONSE_LAYOUT.size      # 12
MAPPING_RESPONSE_SIZE = MAPPING_RESPONSE_LAYOUT.size      # 16
MINIMAL_ADDRESS_REQUEST = bytes([NATPMP_VERSION, Operation.ADDRESS])


def _check_uint(name: str, value, maximum: int):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConstructionError(f"{name} must be an integer, got {type(value).__name__}")
    if not 0 <= value <= maximum:
        raise ConstructionError(f"{name} must be between 0 and {maximum}, got {value}")


@dataclass(frozen=True)
class MappingRequest:
    """A validated port mapping request (MAP_UDP or MAP_TCP only)."""
    operation: Operation
    internal_port: int
    external_port: int
    lifetime: int = DEFAULT_LIFETIME

    def __post_init__(self):
        try:
            operation = Operation(self.operation)
        except ValueError:
            raise ConstructionError(f"Unknown operation: {self.operation!r}") from None
        if not operation.is_mapping:
            raise ConstructionError(
                "Mapping requests require MAP_UDP or MAP_TCP, "
                f"got {operation.name}"
            )
        object.__setattr__(self, "operation", operation)

        _check_uint("internal_port", self.internal_port, MAX_PORT)
        _check_uint("external_port", self.external_port, MAX_PORT)
        _check_uint("lifetime", self.lifetime, MAX_LIFETIME)

    @classmethod
    def create(
        cls,
        internal_port: int,
        external_port: int,
        operation: Union[Operation, str, int],
        lifetime: int = DEFAULT_LIFETIME,
    ) -> "MappingRequest":
        """Build a request, accepting "udp"/"tcp" as the operation."""
        if isinstance(operation, str):
            operation = Operation.from_name(operation)
        return cls(operation, internal_port, external_port, lifetime)

    @classmethod
    def deletion(cls, internal_port: int, operation: Union[Operation, str, int]) -> "MappingRequest":
        """Request that releases the mapping for internal_port (RFC 6886 3.4)."""
        return cls.create(internal_port, 0, operation, lifetime=0)

    def to_bytes(self) -> bytes:
        return REQUEST_LAYOUT.pack(
            version=NATPMP_VERSION,
            opcode=self.operation,
            reserved=0,
            internal_port=self.internal_port,
            external_port=self.external_port,
            lifetime=self.lifetime,
        )


@dataclass(frozen=True)
class AddressResponse:
    """Decoded reply to an external address request."""
    version: int
    opcode: int
    result_code: Union[ResultCode, int]
    epoch: int
    external_address: Optional[ipaddress.IPv4Address] = None

    @property
    def success(self) -> bool:
        return self.result_code == ResultCode.SUCCESS

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "opcode": self.opcode,
            "result_code": int(self.result_code),
            "epoch": self.epoch,
            "external_address": str(self.external_address) if self.external_address else None,
        }


@dataclass(frozen=True)
class MappingResponse:
    """Decoded reply to a mapping (or mapping deletion) request."""
    version: int
    opcode: int
    result_code: Union[ResultCode, int]
    epoch: int
    internal_port: int
    external_port: int
    lifetime: int

    @property
    def success(self) -> bool:
        return self.result_code == ResultCode.SUCCESS

    @property
    def operation(self) -> Operation:
        return Operation(self.opcode & OPCODE_FAMILY_MASK)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "opcode": self.opcode,
            "result_code": int(self.result_code),
            "epoch": self.epoch,
            "internal_port": self.internal_port,
            "external_port": self.external_port,
            "lifetime": self.lifetime,
        }


def encode_request(
    operation: Union[Operation, int],
    internal_port: int = 0,
    external_port: int = 0,
    lifetime: int = 0,
) -> bytes:
    """
    Encode a 12-byte request frame.

    Args:
        operation: ADDRESS, MAP_UDP or MAP_TCP
        internal_port: Local port to map (mapping requests only)
        external_port: Suggested public port, 0 for "any"
        lifetime: Requested lifetime in seconds, 0 to delete

    Returns:
        The request frame

    Raises:
        ConstructionError: unknown operation, values outside their field
            width, or mapping fields given for an address request
    """
    try:
        operation = Operation(operation)
    except ValueError:
        raise ConstructionError(f"Unknown operation: {operation!r}") from None

    if operation is Operation.ADDRESS:
        if internal_port or external_port or lifetime:
            raise ConstructionError("Address requests carry no port or lifetime fields")
        return encode_address_request()

    return MappingRequest(operation, internal_port, external_port, lifetime).to_bytes()


def encode_address_request(minimal: bool = False) -> bytes:
    """
    Encode an external address request.

    The canonical frame is 12 bytes (version, opcode, ten zero bytes). With
    minimal=True the 2-byte form defined by RFC 6886 is returned instead.
    """
    if minimal:
        return MINIMAL_ADDRESS_REQUEST
    return REQUEST_LAYOUT.pack(
        version=NATPMP_VERSION,
        opcode=Operation.ADDRESS,
        reserved=0,
        internal_port=0,
        external_port=0,
        lifetime=0,
    )


def decode_request(data: bytes) -> Union[Operation, MappingRequest]:
    """
    Decode a client request as a gateway would see it.

    Returns Operation.ADDRESS for address requests (2 or 12 bytes) and a
    MappingRequest for mapping requests.
    """
    if len(data) < 2:
        raise MalformedRequest(f"Request too short: {len(data)} bytes")

    opcode = data[1]
    if opcode == Operation.ADDRESS and len(data) in (len(MINIMAL_ADDRESS_REQUEST), REQUEST_SIZE):
        return Operation.ADDRESS

    if len(data) != REQUEST_SIZE:
        raise MalformedRequest(f"Request must be {REQUEST_SIZE} bytes, got {len(data)}")

    fields = REQUEST_LAYOUT.unpack(data)
    try:
        return MappingRequest(
            fields["opcode"],
            fields["internal_port"],
            fields["external_port"],
            fields["lifetime"],
        )
    except ConstructionError as e:
        raise MalformedRequest(str(e)) from e


def _check_response_shape(data: bytes, size: int, expected: Operation, kind: str):
    if len(data) != size:
        raise MalformedResponse(
            f"{kind} response must be {size} bytes, got {len(data)}", data
        )

    opcode = data[1]
    if not opcode & RESPONSE_BIT:
        raise MalformedResponse(
            f"Opcode {opcode} is not a response (high bit clear)", data
        )
    if opcode & OPCODE_FAMILY_MASK != expected:
        raise MalformedResponse(
            f"Opcode {opcode} does not answer a {expected.name} request "
            f"(expected {expected.response_opcode})",
            data,
        )


def decode_address_response(data: bytes) -> AddressResponse:
    """
    Decode a 12-byte external address response.

    The address field is only defined when the result code is SUCCESS;
    otherwise external_address is None whatever the wire bytes say.

    Raises:
        MalformedResponse: wrong length or opcode
    """
    _check_response_shape(data, ADDRESS_RESPONSE_SIZE, Operation.ADDRESS, "Address")

    fields = ADDRESS_RESPONSE_LAYOUT.unpack(data)
    result_code = ResultCode.coerce(fields["result_code"])

    external_address = None
    if result_code == ResultCode.SUCCESS:
        external_address = ipaddress.IPv4Address(fields["external_address"])

    return AddressResponse(
        version=fields["version"],
        opcode=fields["opcode"],
        result_code=result_code,
        epoch=fields["epoch"],
        external_address=external_address,
    )


def decode_mapping_response(data: bytes, expected: Union[Operation, str, int]) -> MappingResponse:
    """
    Decode a 16-byte mapping response.

    Args:
        data: Received datagram
        expected: Operation that was requested; the response opcode must
            belong to the same family

    Raises:
        MalformedResponse: wrong length, opcode without the response bit,
            or a reply to a different operation
    """
    if isinstance(expected, str):
        expected = Operation.from_name(expected)
    try:
        expected = Operation(expected)
    except ValueError:
        raise ConstructionError(f"Unknown operation: {expected!r}") from None
    if not expected.is_mapping:
        raise ConstructionError(f"{expected.name} has no mapping response")

    _check_response_shape(data, MAPPING_RESPONSE_SIZE, expected, "Mapping")

    fields = MAPPING_RESPONSE_LAYOUT.unpack(data)
    return MappingResponse(
        version=fields["version"],
        opcode=fields["opcode"],
        result_code=ResultCode.coerce(fields["result_code"]),
        epoch=fields["epoch"],
        internal_port=fields["internal_port"],
        external_port=fields["external_port"],
        lifetime=fields["lifetime"],
    )


def encode_address_response(
    result_code: int,
    epoch: int,
    external_address: Union[str, ipaddress.IPv4Address, None] = None,
    version: int = NATPMP_VERSION,
) -> bytes:
    """Gateway-side address response frame (used by test gateways)."""
    packed = ipaddress.IPv4Address(external_address or "0.0.0.0").packed
    return ADDRESS_RESPONSE_LAYOUT.pack(
        version=version,
        opcode=Operation.ADDRESS.response_opcode,
        result_code=result_code,
        epoch=epoch,
        external_address=packed,
    )


def encode_mapping_response(
    operation: Union[Operation, int],
    result_code: int,
    epoch: int,
    internal_port: int,
    external_port: int,
    lifetime: int,
    version: int = NATPMP_VERSION,
) -> bytes:
    """Gateway-side mapping response frame (used by test gateways)."""
    return MAPPING_RESPONSE_LAYOUT.pack(
        version=version,
        opcode=Operation(operation).response_opcode,
        result_code=result_code,
        epoch=epoch,
        internal_port=internal_port,
        external_port=external_port,
        lifetime=lifetime,
    )
