"""
Rockery Common Utilities

Shared helpers for JSON payloads, content-type checks and address resolution.
"""

import json
import socket
from typing import Any, List, Optional, Tuple, Union


class ConfigurationError(Exception):
    """Raised when the gateway cannot be configured at startup."""


def json_message(message: str, **extra: Any) -> str:
    """
    Build the JSON body used for every message the gateway itself produces.

    Args:
        message: Human readable message
        **extra: Additional top-level keys (e.g. ``errors`` or ``id``)

    Returns:
        Serialized JSON object with a ``msg`` key

    Example:
        json_message("Rule #1 created", id=1)
        # '{"msg": "Rule #1 created", "id": 1}'
    """
    payload = {'msg': message}
    payload.update(extra)
    return json.dumps(payload)


def safe_json_parse(json_string: Optional[Union[str, bytes]], default: Any = None) -> Any:
    """
    Safely parse JSON string with error handling.

    Args:
        json_string: JSON string to parse
        default: Default value to return if parsing fails

    Returns:
        Parsed JSON object, or default if parsing fails
    """
    if not json_string:
        return default

    try:
        return json.loads(json_string)
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def canonical_json(value: Any) -> str:
    """
    Serialize a JSON value into the canonical form stored in rules.

    Every value, strings included, is dumped as JSON text: compact, with
    sorted keys and unescaped unicode. A string therefore keeps its quotes.

    Raises:
        TypeError, ValueError: If the value cannot be serialized
    """
    return json.dumps(value, separators=(',', ':'), sort_keys=True, ensure_ascii=False, allow_nan=False)


def is_json_content_type(content_type: Optional[str]) -> bool:
    """Check whether a Content-Type header value denotes application/json."""
    if not content_type:
        return False
    media_type = content_type.split(';', 1)[0].strip().lower()
    return media_type == 'application/json'


def resolve_to_socket_address(hostname: str, port: int) -> Tuple[str, int]:
    """
    Resolve a DNS hostname and port to a concrete (ip, port) pair.

    The first address returned by the resolver wins.

    Args:
        hostname: Host name or IP literal
        port: TCP port

    Returns:
        Tuple of (ip_address, port)

    Raises:
        ConfigurationError: If the name cannot be resolved
    """
    try:
        infos = socket.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise ConfigurationError(f"Provided DNS {hostname}:{port} cannot be resolved: {e}") from e

    for family, _type, _proto, _canonname, sockaddr in infos:
        return sockaddr[0], port

    raise ConfigurationError(f"DNS resolution for {hostname}:{port} failed")


def format_authority(ip_address: str, port: int) -> str:
    """Format an address as a URL authority, bracketing IPv6 literals."""
    if ':' in ip_address:
        return f"[{ip_address}]:{port}"
    return f"{ip_address}:{port}"


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Interpret an environment-style flag; only ``1`` and ``true`` enable it."""
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true')


def filter_headers(headers: List[Tuple[bytes, bytes]], skip: frozenset) -> List[Tuple[bytes, bytes]]:
    """
    Drop raw header pairs whose (lower-cased) name is in ``skip``.

    Order and duplicate headers are preserved.
    """
    return [(name, value) for name, value in headers if name.decode('latin-1').lower() not in skip]
