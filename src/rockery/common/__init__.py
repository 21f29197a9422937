"""
Rockery Common Utilities

Shared utilities and helpers used across Rockery modules.
"""

from .utils import (
    ConfigurationError,
    json_message,
    safe_json_parse,
    canonical_json,
    is_json_content_type,
    resolve_to_socket_address,
    format_authority,
    parse_bool,
    filter_headers,
)

__all__ = [
    'ConfigurationError',
    'json_message',
    'safe_json_parse',
    'canonical_json',
    'is_json_content_type',
    'resolve_to_socket_address',
    'format_authority',
    'parse_bool',
    'filter_headers',
]
