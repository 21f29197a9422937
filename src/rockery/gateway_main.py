#!/usr/bin/env python3
"""
Rockery Gateway CLI

Starts the mocking gateway in front of an upstream backend.

Settings come from the environment (ROCKERY_HOST, ROCKERY_PORT, TARGET_HOST,
TARGET_PORT, SPOOF_HOST_HEADER, ROCKERY_DATABASE_URL, ROCKERY_UPSTREAM_TIMEOUT,
ROCKERY_LOG_LEVEL); command-line flags take precedence.

Examples:
    TARGET_HOST=127.0.0.1 TARGET_PORT=5000 rockery-gateway

    rockery-gateway --target-host api.internal --target-port 8080 --port 3000 --spoof-host-header
"""

import argparse
import logging
import os
import sys
from typing import Dict, List, Optional

from rockery.common import ConfigurationError
from rockery.gateway import GatewayConfig, GatewayServer, StoreInitializationError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Rockery - transparent HTTP mocking gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Proxy to a local backend, mocking rules registered at runtime
  TARGET_HOST=127.0.0.1 TARGET_PORT=5000 %(prog)s

  # Register a rule
  curl -X POST localhost:3333/rockery-mock/create-rule \\
       -H 'Content-Type: application/json' \\
       -d '{"_rockery_request_url": "/ping", "_rockery_request_method": "GET",
            "_rockery_response_status_code": 200, "_rockery_response_data": {"ok": true}}'
        """
    )
    parser.add_argument('--host', help='Host to bind (env: ROCKERY_HOST, default: localhost)')
    parser.add_argument('-p', '--port', help='Port to bind (env: ROCKERY_PORT, default: 3333)')
    parser.add_argument('--target-host', help='Upstream host (env: TARGET_HOST, required)')
    parser.add_argument('--target-port', help='Upstream port (env: TARGET_PORT, default: 80)')
    parser.add_argument('--spoof-host-header', action='store_true', default=None,
                        help='Send the upstream host as Host header (env: SPOOF_HOST_HEADER)')
    parser.add_argument('--database-url', help='SQLAlchemy URL for rules (env: ROCKERY_DATABASE_URL, default: in-memory)')
    parser.add_argument('--upstream-timeout', help='Upstream timeout in seconds, 0 disables (env: ROCKERY_UPSTREAM_TIMEOUT)')
    parser.add_argument('--log-level', choices=['debug', 'info', 'warning', 'error', 'critical'],
                        help='Log level (env: ROCKERY_LOG_LEVEL, default: info)')
    return parser


def merge_environment(args: argparse.Namespace, environ: Dict[str, str]) -> Dict[str, str]:
    """Overlay command-line flags on top of environment variables."""
    merged = dict(environ)
    overrides = {
        'ROCKERY_HOST': args.host,
        'ROCKERY_PORT': args.port,
        'TARGET_HOST': args.target_host,
        'TARGET_PORT': args.target_port,
        'ROCKERY_DATABASE_URL': args.database_url,
        'ROCKERY_UPSTREAM_TIMEOUT': args.upstream_timeout,
        'ROCKERY_LOG_LEVEL': args.log_level,
    }
    if args.spoof_host_header:
        overrides['SPOOF_HOST_HEADER'] = '1'

    for key, value in overrides.items():
        if value is not None:
            merged[key] = str(value)
    return merged


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = GatewayConfig.from_env(merge_environment(args, dict(os.environ)))
    except ConfigurationError as e:
        print(f"❌ {e}")
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Bootstrap failures are fatal: no store or no upstream means nothing to serve
    try:
        server = GatewayServer(config)
    except (ConfigurationError, StoreInitializationError) as e:
        print(f"❌ Failed to start gateway: {e}")
        sys.exit(1)

    print(f"🪨 Rockery Mocking Gateway")
    print(f"   Listening on: {config.host}:{config.port}")
    print(f"   Redirecting to: {server.forwarder.authority} ({config.target_host})")
    if config.spoof_host_header:
        print(f"   Host header spoofed as: {config.spoofed_host}")
    print(f"   Rules: {server.store.count()}")
    print()

    try:
        server.start()
    except KeyboardInterrupt:
        print("\n\n👋 Gateway stopped")


if __name__ == '__main__':
    main()
