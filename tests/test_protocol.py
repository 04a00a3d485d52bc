"""
Unit tests for the protocol (wire format) module.
"""
import ipaddress
import struct

import pytest

from natpmp_client.protocol import (
    ADDRESS_RESPONSE_SIZE,
    MAPPING_RESPONSE_LAYOUT,
    MAPPING_RESPONSE_SIZE,
    REQUEST_LAYOUT,
    REQUEST_SIZE,
    ConstructionError,
    MalformedRequest,
    MalformedResponse,
    MappingRequest,
    Operation,
    ResultCode,
    decode_address_response,
    decode_mapping_response,
    decode_request,
    encode_address_request,
    encode_address_response,
    encode_mapping_response,
    encode_request,
)


class TestLayouts:
    """Frame sizes and field offsets."""

    def test_frame_sizes(self):
        assert REQUEST_SIZE == 12
        assert ADDRESS_RESPONSE_SIZE == 12
        assert MAPPING_RESPONSE_SIZE == 16

    def test_mapping_response_offsets(self):
        assert MAPPING_RESPONSE_LAYOUT.offsets == {
            "version": 0,
            "opcode": 1,
            "result_code": 2,
            "epoch": 4,
            "internal_port": 8,
            "external_port": 10,
            "lifetime": 12,
        }
        assert MAPPING_RESPONSE_LAYOUT.field_slice("lifetime") == slice(12, 16)

    def test_request_offsets(self):
        assert REQUEST_LAYOUT.offsets["reserved"] == 2
        assert REQUEST_LAYOUT.offsets["internal_port"] == 4
        assert REQUEST_LAYOUT.offsets["lifetime"] == 8


class TestOperation:
    """Opcode relationships."""

    def test_response_opcodes(self):
        assert Operation.ADDRESS.response_opcode == 128
        assert Operation.MAP_UDP.response_opcode == 129
        assert Operation.MAP_TCP.response_opcode == 130

    def test_from_name(self):
        assert Operation.from_name("udp") is Operation.MAP_UDP
        assert Operation.from_name("TCP") is Operation.MAP_TCP

    def test_from_name_rejects_unknown(self):
        with pytest.raises(ConstructionError):
            Operation.from_name("sctp")


class TestResultCode:
    def test_known_code(self):
        assert ResultCode.coerce(3) is ResultCode.NETWORK_FAILURE

    def test_unknown_code_preserved(self):
        code = ResultCode.coerce(42)
        assert code == 42
        assert not isinstance(code, ResultCode)


class TestMappingRequest:
    """Construction-time validation."""

    def test_create_with_name(self):
        request = MappingRequest.create(25565, 25565, "tcp", 3600)
        assert request.operation is Operation.MAP_TCP
        assert request.lifetime == 3600

    def test_default_lifetime(self):
        request = MappingRequest(Operation.MAP_UDP, 1000, 1000)
        assert request.lifetime == 7200

    def test_address_operation_rejected(self):
        with pytest.raises(ConstructionError):
            MappingRequest(Operation.ADDRESS, 1000, 1000)

    def test_unknown_operation_rejected(self):
        with pytest.raises(ConstructionError):
            MappingRequest(7, 1000, 1000)

    @pytest.mark.parametrize("internal, external, lifetime", [
        (-1, 1000, 60),
        (65536, 1000, 60),
        (1000, 70000, 60),
        (1000, 1000, -5),
        (1000, 1000, 2 ** 32),
        (True, 1000, 60),
        ("80", 1000, 60),
    ])
    def test_out_of_range_values_rejected(self, internal, external, lifetime):
        with pytest.raises(ConstructionError):
            MappingRequest(Operation.MAP_UDP, internal, external, lifetime)

    def test_construction_error_is_value_error(self):
        with pytest.raises(ValueError):
            MappingRequest.create(1, 1, "udp", -1)

    def test_request_is_immutable(self):
        request = MappingRequest.create(1000, 1000, "udp")
        with pytest.raises(AttributeError):
            request.lifetime = 0

    def test_deletion(self):
        request = MappingRequest.deletion(22000, Operation.MAP_UDP)
        assert request.external_port == 0
        assert request.lifetime == 0


class TestEncodeRequest:
    """Request frame encoding."""

    def test_mapping_request_bytes(self):
        frame = encode_request(Operation.MAP_TCP, 25565, 25565, 7200)
        assert frame == bytes([
            0x00, 0x02, 0x00, 0x00,
            0x63, 0xDD, 0x63, 0xDD,
            0x00, 0x00, 0x1C, 0x20,
        ])

    def test_address_request_frame(self):
        frame = encode_request(Operation.ADDRESS)
        assert frame == b"\x00\x00" + b"\x00" * 10
        assert encode_address_request() == frame

    def test_minimal_address_request(self):
        assert encode_address_request(minimal=True) == b"\x00\x00"

    def test_address_request_rejects_mapping_fields(self):
        with pytest.raises(ConstructionError):
            encode_request(Operation.ADDRESS, 1000, 0, 0)

    def test_out_of_domain_port(self):
        with pytest.raises(ConstructionError):
            encode_request(Operation.MAP_UDP, 65536, 0, 0)

    def test_unknown_opcode(self):
        with pytest.raises(ConstructionError):
            encode_request(9, 1, 1, 1)

    @pytest.mark.parametrize("operation, internal, external, lifetime", [
        (Operation.MAP_UDP, 0, 0, 0),
        (Operation.MAP_TCP, 65535, 65535, 0xFFFFFFFF),
        (Operation.MAP_UDP, 22000, 0, 0),
        (Operation.MAP_TCP, 25565, 25565, 3600),
        (Operation.MAP_UDP, 1, 54321, 86400),
    ])
    def test_round_trip(self, operation, internal, external, lifetime):
        request = MappingRequest(operation, internal, external, lifetime)
        assert decode_request(encode_request(operation, internal, external, lifetime)) == request

    def test_decode_address_requests(self):
        assert decode_request(b"\x00\x00") is Operation.ADDRESS
        assert decode_request(encode_address_request()) is Operation.ADDRESS

    def test_decode_request_rejects_short_mapping(self):
        with pytest.raises(MalformedRequest):
            decode_request(b"\x00\x01\x00\x00")


class TestDecodeAddressResponse:
    """External address response decoding."""

    def test_success(self):
        data = encode_address_response(0, 22758, "198.51.100.4")
        response = decode_address_response(data)

        assert response.version == 0
        assert response.opcode == 128
        assert response.result_code is ResultCode.SUCCESS
        assert response.epoch == 22758
        assert response.external_address == ipaddress.IPv4Address("198.51.100.4")
        assert response.success

    def test_address_suppressed_on_failure(self):
        # Garbage in the address field must not leak through
        data = struct.pack("!BBHI4B", 0, 128, 3, 50, 10, 0, 0, 1)
        response = decode_address_response(data)

        assert response.result_code is ResultCode.NETWORK_FAILURE
        assert response.external_address is None
        assert not response.success

    def test_unknown_result_code(self):
        data = struct.pack("!BBHI4B", 0, 128, 99, 50, 1, 2, 3, 4)
        response = decode_address_response(data)

        assert response.result_code == 99
        assert response.external_address is None

    @pytest.mark.parametrize("size", [0, 2, 11, 13, 16])
    def test_wrong_length(self, size):
        with pytest.raises(MalformedResponse):
            decode_address_response(b"\x00\x80" + b"\x00" * max(size - 2, 0))

    def test_response_bit_required(self):
        data = bytearray(encode_address_response(0, 1, "1.2.3.4"))
        data[1] = 0x00
        with pytest.raises(MalformedResponse):
            decode_address_response(bytes(data))

    def test_mapping_opcode_rejected(self):
        data = bytearray(encode_address_response(0, 1, "1.2.3.4"))
        data[1] = 129
        with pytest.raises(MalformedResponse) as excinfo:
            decode_address_response(bytes(data))
        assert excinfo.value.data == bytes(data)


class TestDecodeMappingResponse:
    """Mapping response decoding."""

    def test_success(self):
        data = encode_mapping_response(Operation.MAP_TCP, 0, 22758, 25565, 25565, 3600)
        response = decode_mapping_response(data, Operation.MAP_TCP)

        assert response.to_dict() == {
            "version": 0,
            "opcode": 130,
            "result_code": 0,
            "epoch": 22758,
            "internal_port": 25565,
            "external_port": 25565,
            "lifetime": 3600,
        }
        assert response.operation is Operation.MAP_TCP

    def test_big_endian_layout(self):
        data = encode_mapping_response(Operation.MAP_UDP, 0, 1, 25565, 25565, 7200)
        assert data[12:16] == bytes([0x00, 0x00, 0x1C, 0x20])
        assert data[8:10] == bytes([0x63, 0xDD])

    def test_refusal_is_not_an_error(self):
        data = encode_mapping_response(Operation.MAP_UDP, 2, 5, 1000, 0, 0)
        response = decode_mapping_response(data, "udp")

        assert response.result_code is ResultCode.NOT_AUTHORIZED
        assert not response.success

    def test_family_mismatch(self):
        data = encode_mapping_response(Operation.MAP_UDP, 0, 5, 1000, 1000, 60)
        with pytest.raises(MalformedResponse):
            decode_mapping_response(data, Operation.MAP_TCP)

    def test_request_echo_rejected(self):
        data = bytearray(encode_mapping_response(Operation.MAP_TCP, 0, 5, 1000, 1000, 60))
        data[1] = Operation.MAP_TCP
        with pytest.raises(MalformedResponse):
            decode_mapping_response(bytes(data), Operation.MAP_TCP)

    def test_wrong_length(self):
        data = encode_mapping_response(Operation.MAP_TCP, 0, 5, 1000, 1000, 60)
        with pytest.raises(MalformedResponse):
            decode_mapping_response(data[:12], Operation.MAP_TCP)
        with pytest.raises(MalformedResponse):
            decode_mapping_response(data + b"\x00", Operation.MAP_TCP)

    def test_address_operation_not_a_mapping(self):
        data = encode_mapping_response(Operation.MAP_TCP, 0, 5, 1000, 1000, 60)
        with pytest.raises(ConstructionError):
            decode_mapping_response(data, Operation.ADDRESS)

    def test_unknown_operation_is_construction_error(self):
        data = encode_mapping_response(Operation.MAP_TCP, 0, 5, 1000, 1000, 60)
        with pytest.raises(ConstructionError, match="Unknown operation"):
            decode_mapping_response(data, 9)
