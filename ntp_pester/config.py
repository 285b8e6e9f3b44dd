"""
Core configuration management
"""
import re
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

from ntp_pester.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Harness settings"""

    # Target defaults
    default_port: int = 123
    default_ke_port: int = 4460
    default_timeout_ms: int = 100

    # Runner
    case_timeout_sec: float = 10.0  # upper bound for a single test case

    # Wire limits
    max_datagram_bytes: int = 9000
    max_ke_records: int = 1024  # records accepted in one NTS-KE response
    ke_read_size: int = 16384  # max TLS record size

    # NTS
    nts_session_cookies: int = 2  # one for the test body, one for the liveness probe

    # Logging
    log_dir: Optional[Path] = None
    log_level: str = "WARNING"

    class Config:
        env_prefix = "PESTER_"
        env_file = ".env"


settings = Settings()


_TIMEOUT_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s)?\s*$")


def parse_timeout(value: str) -> float:
    """
    Parse a human timeout ("100ms", "1.5s", "2") into seconds.

    Raises:
        ConfigurationError: If the value is not a positive duration
    """
    match = _TIMEOUT_PATTERN.match(value)
    if not match:
        raise ConfigurationError(f"Invalid timeout: {value!r}", details={"value": value})
    amount = float(match.group(1))
    if match.group(2) == "ms":
        amount /= 1000.0
    if amount <= 0:
        raise ConfigurationError(f"Timeout must be positive: {value!r}", details={"value": value})
    return amount


def split_host_port(target: str) -> Tuple[str, Optional[int]]:
    """Split "host", "host:port", "[v6]" or "[v6]:port"."""
    if target.startswith("["):
        host, sep, rest = target[1:].partition("]")
        if not sep:
            raise ConfigurationError(f"Unterminated IPv6 literal: {target!r}")
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise ConfigurationError(f"Unexpected data after IPv6 literal: {target!r}")
        return host, _parse_port(rest[1:], target)

    # A bare IPv6 address has more than one colon and no port
    if target.count(":") == 1:
        host, _, port = target.partition(":")
        return host, _parse_port(port, target)
    return target, None


def _parse_port(value: str, target: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid port in {target!r}", details={"port": value})


class RunConfig(BaseModel):
    """Validated configuration for one run against a target"""

    model_config = {"frozen": True}

    target: str = Field(min_length=1)
    port: int = Field(default=settings.default_port, ge=1, le=65535)
    timeout: float = Field(default=settings.default_timeout_ms / 1000.0, gt=0)
    nts_enabled: bool = False
    ke_port: int = Field(default=settings.default_ke_port, ge=1, le=65535)
    ca_file: Optional[Path] = None
    case_timeout: float = Field(default=settings.case_timeout_sec, gt=0)

    @model_validator(mode="after")
    def _ca_file_requires_nts(self) -> "RunConfig":
        if self.ca_file is not None and not self.nts_enabled:
            raise ValueError("ca_file is only used together with NTS")
        return self

    @classmethod
    def from_target(cls, target: str, port: Optional[int] = None, **kwargs) -> "RunConfig":
        """
        Build a config from a "host[:port]" target string.

        A port embedded in the target wins over the separately supplied one.
        """
        host, embedded_port = split_host_port(target)
        if embedded_port is not None:
            port = embedded_port
        elif port is None:
            port = settings.default_port
        return cls(target=host, port=port, **kwargs)
