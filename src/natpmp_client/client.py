"""
NAT-PMP client: external address discovery and port mapping.

Each call is one request/response exchange. Requests are retransmitted
with a doubling timeout (250 ms, 500 ms, ... ) as RFC 6886 section 3.1
recommends, until a datagram arrives or the attempts run out.
"""
import asyncio
import time
from typing import Iterator, Optional, Union

import structlog

from natpmp_client.config import ClientConfig
from natpmp_client.protocol import (
    DEFAULT_LIFETIME,
    GATEWAY_PORT,
    AddressResponse,
    MalformedResponse,
    MappingRequest,
    MappingResponse,
    NATPMPError,
    Operation,
    decode_address_response,
    decode_mapping_response,
    encode_address_request,
)
from natpmp_client.transport import (
    DatagramChannel,
    Failed,
    Received,
    UDPGatewayChannel,
)


INITIAL_TIMEOUT = 0.25
MAX_ATTEMPTS = 8

# Large enough that oversized replies are seen whole and rejected by the
# decoder instead of being silently truncated to a valid-looking frame.
RECEIVE_BUFFER_SIZE = 1100


class GatewayUnresponsive(NATPMPError):
    """Every attempt of an exchange timed out."""

    def __init__(self, gateway: str, attempts: int):
        super().__init__(
            f"The gateway '{gateway}' did not answer after {attempts} attempts; "
            "it may not support NAT-PMP"
        )
        self.gateway = gateway
        self.attempts = attempts


def backoff_schedule(initial: float = INITIAL_TIMEOUT, attempts: int = MAX_ATTEMPTS) -> Iterator[float]:
    """Receive timeouts for each attempt, doubling from `initial`."""
    timeout = initial
    for _ in range(attempts):
        yield timeout
        timeout *= 2


class NatPMPClient:
    """
    Client for a single NAT-PMP gateway.

    Owns its datagram channel. One exchange runs at a time per instance;
    concurrent callers are serialized.
    """

    def __init__(
        self,
        channel: DatagramChannel,
        gateway: str,
        initial_timeout: float = INITIAL_TIMEOUT,
        max_attempts: int = MAX_ATTEMPTS,
        default_lifetime: int = DEFAULT_LIFETIME,
    ):
        """
        Initialize client.

        Args:
            channel: Channel already connected to the gateway
            gateway: Gateway address, used in errors and logs
            initial_timeout: First receive timeout in seconds
            max_attempts: Number of sends before giving up
            default_lifetime: Lifetime used when request_mapping gets none
        """
        if initial_timeout <= 0:
            raise ValueError("initial_timeout must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.channel = channel
        self.gateway = gateway
        self.initial_timeout = initial_timeout
        self.max_attempts = max_attempts
        self.default_lifetime = default_lifetime
        self.logger = structlog.get_logger().bind(gateway=gateway)

        self._lock = asyncio.Lock()

        # Gateway epoch tracking (RFC 6886 section 3.6)
        self.last_epoch: Optional[int] = None
        self._last_epoch_at: Optional[float] = None
        self.gateway_rebooted = False

        self.stats = {
            "exchanges": 0,
            "retransmissions": 0,
            "timeouts": 0,
            "malformed": 0,
            "unresponsive": 0,
        }

    @classmethod
    async def connect(
        cls,
        gateway: str,
        port: int = GATEWAY_PORT,
        local_host: str = "0.0.0.0",
        local_port: int = 0,
        reuse_address: bool = False,
        reuse_port: bool = False,
        **kwargs,
    ) -> "NatPMPClient":
        """Open a UDP channel to `gateway` and return a client using it."""
        channel = UDPGatewayChannel(
            gateway,
            port=port,
            local_host=local_host,
            local_port=local_port,
            reuse_address=reuse_address,
            reuse_port=reuse_port,
        )
        client = cls(channel, gateway, **kwargs)
        await channel.start()
        return client

    @classmethod
    async def from_config(cls, config: ClientConfig) -> "NatPMPClient":
        """Open a client from a ClientConfig."""
        config.validate()
        return await cls.connect(
            config.gateway,
            port=config.gateway_port,
            local_host=config.local_host,
            local_port=config.local_port,
            reuse_address=config.reuse_address,
            reuse_port=config.reuse_port,
            initial_timeout=config.initial_timeout,
            max_attempts=config.max_attempts,
            default_lifetime=config.default_lifetime,
        )

    async def __aenter__(self) -> "NatPMPClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.channel.close()

    async def send_external_address_request(self) -> AddressResponse:
        """
        Ask the gateway for its external IPv4 address.

        A non-zero result code is returned, not raised; external_address is
        None in that case.
        """
        data = await self._exchange(encode_address_request(), Operation.ADDRESS)
        response = self._decode(decode_address_response, data)
        self._track_epoch(response.epoch)

        self.logger.info(
            "external_address_received",
            result_code=int(response.result_code),
            external_address=str(response.external_address) if response.external_address else None,
            epoch=response.epoch,
        )
        return response

    async def request_mapping(
        self,
        internal_port: int,
        external_port: int,
        operation: Union[Operation, str] = Operation.MAP_UDP,
        lifetime: Optional[int] = None,
    ) -> MappingResponse:
        """
        Create or renew a port mapping.

        Args:
            internal_port: Local port to expose
            external_port: Suggested public port (0 lets the gateway choose)
            operation: Operation.MAP_UDP / MAP_TCP or "udp" / "tcp"
            lifetime: Requested lifetime in seconds (default 7200)

        Returns:
            The gateway's answer, including the port and lifetime actually
            granted. Refusals come back as non-zero result codes.

        Raises:
            ConstructionError: invalid operation, port or lifetime
            MalformedResponse: the reply does not answer this request
            GatewayUnresponsive: every attempt timed out
            TransportError: the channel reported an error
        """
        if lifetime is None:
            lifetime = self.default_lifetime
        request = MappingRequest.create(internal_port, external_port, operation, lifetime)
        return await self._map(request)

    async def destroy_mapping(
        self,
        internal_port: int,
        operation: Union[Operation, str] = Operation.MAP_UDP,
    ) -> MappingResponse:
        """Release the mapping for `internal_port` (external port 0, lifetime 0)."""
        return await self._map(MappingRequest.deletion(internal_port, operation))

    async def _map(self, request: MappingRequest) -> MappingResponse:
        data = await self._exchange(request.to_bytes(), request.operation)
        response = self._decode(decode_mapping_response, data, request.operation)
        self._track_epoch(response.epoch)

        self.logger.info(
            "mapping_response_received",
            protocol=request.operation.protocol_name,
            result_code=int(response.result_code),
            internal_port=response.internal_port,
            external_port=response.external_port,
            lifetime=response.lifetime,
            epoch=response.epoch,
        )
        return response

    def _decode(self, decoder, data: bytes, *args):
        try:
            return decoder(data, *args)
        except MalformedResponse as e:
            self.stats["malformed"] += 1
            self.logger.warning("malformed_response", error=str(e), size=len(data))
            raise

    async def _exchange(self, frame: bytes, operation: Operation) -> bytes:
        """
        Send `frame` until a datagram comes back.

        Only timeouts are retried. The first datagram received ends the
        exchange whatever its content; validation is left to the decoder.
        """
        async with self._lock:
            self.stats["exchanges"] += 1
            self.channel.flush()

            for attempt, timeout in enumerate(
                backoff_schedule(self.initial_timeout, self.max_attempts), start=1
            ):
                if attempt > 1:
                    self.stats["retransmissions"] += 1

                await self.channel.send(frame)
                self.logger.debug(
                    "request_sent",
                    operation=operation.protocol_name,
                    attempt=attempt,
                    timeout=timeout,
                )

                outcome = await self.channel.receive(RECEIVE_BUFFER_SIZE, timeout)

                if isinstance(outcome, Received):
                    self.logger.debug(
                        "response_received",
                        operation=operation.protocol_name,
                        attempt=attempt,
                        size=len(outcome.data),
                    )
                    return outcome.data

                if isinstance(outcome, Failed):
                    self.logger.error(
                        "transport_error",
                        operation=operation.protocol_name,
                        attempt=attempt,
                        error=str(outcome.error),
                    )
                    raise outcome.error

                self.stats["timeouts"] += 1
                self.logger.debug(
                    "request_timeout",
                    operation=operation.protocol_name,
                    attempt=attempt,
                    timeout=timeout,
                )

            self.stats["unresponsive"] += 1
            self.logger.warning(
                "gateway_unresponsive",
                operation=operation.protocol_name,
                attempts=self.max_attempts,
            )
            raise GatewayUnresponsive(self.gateway, self.max_attempts)

    def _track_epoch(self, epoch: int):
        """
        Detect a gateway reboot from its epoch counter.

        The gateway's clock may run slower than ours by up to 1/8, and the
        two samples are taken up to 2 seconds apart in the worst case.
        """
        now = self._now()
        rebooted = False

        if self.last_epoch is not None:
            client_delta = now - self._last_epoch_at
            server_delta = epoch - self.last_epoch
            if server_delta < -1 or client_delta * 7 / 8 > server_delta + 2:
                rebooted = True
                self.logger.warning(
                    "gateway_epoch_reset",
                    previous_epoch=self.last_epoch,
                    epoch=epoch,
                    elapsed=round(client_delta, 3),
                )

        self.gateway_rebooted = rebooted
        self.last_epoch = epoch
        self._last_epoch_at = now

    def _now(self) -> float:
        return time.monotonic()

    def get_stats(self) -> dict:
        """Get client statistics."""
        return {
            **self.stats,
            "last_epoch": self.last_epoch,
            "gateway_rebooted": self.gateway_rebooted,
        }
