"""
Rockery Gateway Module

Transparent HTTP mocking gateway.

This module provides:
- FastAPI-based gateway with a rule management API
- SQLAlchemy rule store with exact, NULL-aware matching
- Payload validation that reports every error at once
- Upstream forwarding over httpx
"""

from .server import GatewayServer, GatewayMetrics, RuleIntegrityError, create_gateway_server
from .settings import GatewayConfig
from .rule import MockingRule, INTERCEPTABLE_METHODS
from .store import (
    RuleStore,
    RuleStoreError,
    StoreInitializationError,
    RuleAlreadyPersistedError,
    RuleNotPersistedError,
    DuplicateRuleError,
)
from .validator import RuleValidationError, create_mocking_rule_from_json, parse_rule_criteria
from .forwarder import UpstreamForwarder, UpstreamResponse, UpstreamError

__all__ = [
    # Server
    'GatewayServer',
    'GatewayMetrics',
    'GatewayConfig',
    'RuleIntegrityError',
    'create_gateway_server',

    # Rules
    'MockingRule',
    'INTERCEPTABLE_METHODS',
    'RuleValidationError',
    'create_mocking_rule_from_json',
    'parse_rule_criteria',

    # Store
    'RuleStore',
    'RuleStoreError',
    'StoreInitializationError',
    'RuleAlreadyPersistedError',
    'RuleNotPersistedError',
    'DuplicateRuleError',

    # Forwarding
    'UpstreamForwarder',
    'UpstreamResponse',
    'UpstreamError',
]
