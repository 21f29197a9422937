"""
Rockery Gateway Configuration

Environment-driven settings, resolved once at startup.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from ..common import ConfigurationError, parse_bool, resolve_to_socket_address


LOG_LEVELS = ('debug', 'info', 'warning', 'error', 'critical')

@dataclass
class GatewayConfig:
    """Configuration for the mocking gateway."""

    # Listener
    host: str = "localhost"
    port: int = 3333

    # Upstream backend
    target_host: str = "127.0.0.1"
    target_port: int = 80
    spoof_host_header: bool = False
    upstream_timeout: Optional[float] = 30.0  # None disables the timeout

    # Rule storage
    database_url: str = "sqlite://"

    log_level: str = "info"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'GatewayConfig':
        """
        Build configuration from environment variables.

        ``TARGET_HOST`` is mandatory; everything else has a default.

        Raises:
            ConfigurationError: If a value is missing or malformed
        """
        env = os.environ if environ is None else environ

        target_host = env.get('TARGET_HOST')
        if not target_host:
            raise ConfigurationError("TARGET_HOST env variable is not set!")

        log_level = env.get('ROCKERY_LOG_LEVEL', 'info').lower()
        if log_level not in LOG_LEVELS:
            raise ConfigurationError(f"ROCKERY_LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}")

        return cls(
            host=env.get('ROCKERY_HOST', 'localhost'),
            port=_parse_port(env.get('ROCKERY_PORT'), 'ROCKERY_PORT', 3333),
            target_host=target_host,
            target_port=_parse_port(env.get('TARGET_PORT'), 'TARGET_PORT', 80),
            spoof_host_header=parse_bool(env.get('SPOOF_HOST_HEADER')),
            upstream_timeout=_parse_timeout(env.get('ROCKERY_UPSTREAM_TIMEOUT'), 30.0),
            database_url=env.get('ROCKERY_DATABASE_URL', 'sqlite://'),
            log_level=log_level,
        )

    def resolve_target(self) -> Tuple[str, int]:
        """
        Resolve the upstream host to a concrete address.

        Raises:
            ConfigurationError: If the host cannot be resolved
        """
        return resolve_to_socket_address(self.target_host, self.target_port)

    @property
    def spoofed_host(self) -> str:
        """Host header value sent upstream when spoofing is enabled."""
        if self.target_port == 80:
            return self.target_host
        return f"{self.target_host}:{self.target_port}"


def _parse_port(raw: Optional[str], name: str, default: int) -> int:
    if raw is None or raw == '':
        return default
    try:
        port = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} is not a valid port number")
    if not 0 < port < 65536:
        raise ConfigurationError(f"{name} is not a valid port number")
    return port


def _parse_timeout(raw: Optional[str], default: float) -> Optional[float]:
    if raw is None or raw == '':
        return default
    if raw.strip().lower() in ('0', 'none'):
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError("ROCKERY_UPSTREAM_TIMEOUT must be a number of seconds")
