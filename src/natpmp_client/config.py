"""
Configuration management for the NAT-PMP client.
"""
from dataclasses import asdict, dataclass, fields
from typing import Optional
import ipaddress
import json
import logging


@dataclass
class ClientConfig:
    """Configuration for a NAT-PMP client."""

    # Gateway
    gateway: Optional[str] = None
    gateway_port: int = 5351

    # Local socket
    local_host: str = "0.0.0.0"
    local_port: int = 0  # 0 for an ephemeral port
    reuse_address: bool = False
    reuse_port: bool = False

    # Retransmission (RFC 6886 section 3.1)
    initial_timeout: float = 0.25  # Seconds before the first retransmission
    max_attempts: int = 8

    # Mappings
    default_lifetime: int = 7200  # Seconds

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # "console" or "json"

    @classmethod
    def from_file(cls, path: str) -> "ClientConfig":
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a JSON object")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_file(self, path: str):
        """Save configuration to a JSON file."""
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    def validate(self) -> bool:
        """Validate configuration parameters."""
        self._check_types()

        if not self.gateway:
            raise ValueError("gateway is required")

        try:
            ipaddress.IPv4Address(self.gateway)
        except ValueError:
            # Host names are resolved when the channel opens
            if ":" in self.gateway:
                raise ValueError(f"NAT-PMP is IPv4 only, got gateway {self.gateway}")

        if self.gateway_port < 1 or self.gateway_port > 65535:
            raise ValueError(f"Invalid gateway_port: {self.gateway_port}")

        if self.local_port < 0 or self.local_port > 65535:
            raise ValueError(f"Invalid local_port: {self.local_port}")

        if self.initial_timeout <= 0:
            raise ValueError("initial_timeout must be positive")

        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        if not (0 <= self.default_lifetime <= 0xFFFFFFFF):
            raise ValueError(f"default_lifetime out of range: {self.default_lifetime}")

        if self.log_format not in ("console", "json"):
            raise ValueError(f"log_format must be 'console' or 'json', got {self.log_format}")

        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Unknown log_level: {self.log_level}")

        return True

    def _check_types(self):
        """Reject values of the wrong JSON type before comparing them."""
        expected = {
            "gateway": (str, type(None)),
            "gateway_port": (int,),
            "local_host": (str,),
            "local_port": (int,),
            "reuse_address": (bool,),
            "reuse_port": (bool,),
            "initial_timeout": (int, float),
            "max_attempts": (int,),
            "default_lifetime": (int,),
            "log_level": (str,),
            "log_format": (str,),
        }
        for name, types in expected.items():
            value = getattr(self, name)
            # bool is an int subclass; only the flag fields accept it
            if isinstance(value, bool) and bool not in types:
                raise ValueError(f"{name} must not be a boolean")
            if not isinstance(value, types):
                raise ValueError(
                    f"{name} must be of type {'/'.join(t.__name__ for t in types)}, "
                    f"got {type(value).__name__}"
                )
