"""
Rockery Mocking Gateway

FastAPI-based gateway that sits in front of a real backend and, per request,
either serves a registered mock response or forwards the request upstream.

Features:
- Exact, NULL-aware rule matching on method, path, query string and body
- Transparent forwarding with optional Host header spoofing
- Management API for creating and deleting rules
- Request metrics and logging
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool

from ..common import format_authority, is_json_content_type, json_message, safe_json_parse
from .forwarder import UpstreamError, UpstreamForwarder
from .rule import INTERCEPTABLE_METHODS, MockingRule, is_valid_status_code
from .settings import GatewayConfig
from .store import DuplicateRuleError, RuleStore, RuleStoreError
from .validator import (
    RuleValidationError,
    create_mocking_rule_from_json,
    normalize_request_body,
    parse_rule_criteria,
)


CREATE_RULE_PATH = "/rockery-mock/create-rule"
DELETE_RULE_PATH = "/rockery-mock/delete-rule"

SERVER_NAME = "Rockery Mocking Gateway"

MOCK_RESPONSE_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': '*',
    'Access-Control-Allow-Methods': 'GET, PUT, POST, DELETE, HEAD, OPTIONS',
    'Server': SERVER_NAME,
    'X-Mocked': '1',
    'Content-Type': 'application/json; charset=UTF-8',
}


_INVALID_JSON = object()


class RuleIntegrityError(Exception):
    """Raised when a stored rule cannot be turned into a response."""


class ManagementError(Exception):
    """A management request that must be answered with an error status."""

    def __init__(self, status_code: int, message: str, errors: Optional[List[str]] = None):
        self.status_code = status_code
        self.message = message
        self.errors = errors
        super().__init__(message)


@dataclass
class GatewayMetrics:
    """Track gateway metrics."""

    total_requests: int = 0
    mocked_requests: int = 0
    forwarded_requests: int = 0
    upstream_failures: int = 0
    rules_created: int = 0
    rules_deleted: int = 0
    client_disconnects: int = 0
    start_time: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        uptime_seconds = (datetime.now() - datetime.fromisoformat(self.start_time)).total_seconds()
        return {
            'total_requests': self.total_requests,
            'mocked_requests': self.mocked_requests,
            'forwarded_requests': self.forwarded_requests,
            'upstream_failures': self.upstream_failures,
            'rules_created': self.rules_created,
            'rules_deleted': self.rules_deleted,
            'client_disconnects': self.client_disconnects,
            'mock_rate': round((self.mocked_requests / self.total_requests * 100) if self.total_requests > 0 else 0, 2),
            'uptime_seconds': round(uptime_seconds, 2),
            'start_time': self.start_time
        }


def json_response(status_code: int, message: str, **extra: Any) -> Response:
    return Response(
        content=json_message(message, **extra),
        status_code=status_code,
        media_type="application/json",
    )


class CatchAllEndpoint:
    """
    Raw ASGI endpoint serving every method on every path.

    The router limits plain function endpoints to GET and HEAD, while an ASGI
    app is handed the request whatever its method, custom ones included.
    """

    def __init__(self, handler: Callable[[Request], Awaitable[Response]]):
        self.handler = handler

    async def __call__(self, scope, receive, send) -> None:
        request = Request(scope, receive)
        response = await self.handler(request)
        await response(scope, receive, send)


class GatewayServer:
    """
    Mocking gateway in front of a single upstream backend.

    Example:
        config = GatewayConfig(target_host='127.0.0.1', target_port=5000)
        server = GatewayServer(config)
        server.start()

        # With an injected store, e.g. in tests
        server = GatewayServer(config, store=RuleStore(), forwarder=forwarder)
        client = TestClient(server.app)
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        store: Optional[RuleStore] = None,
        forwarder: Optional[UpstreamForwarder] = None
    ):
        """
        Initialize gateway.

        Args:
            config: Optional GatewayConfig (defaults are used otherwise)
            store: Optional RuleStore (in-memory store from config if None)
            forwarder: Optional UpstreamForwarder (built from the resolved
                target address if None)

        Raises:
            StoreInitializationError: If the rule table cannot be created
            ConfigurationError: If the upstream address cannot be resolved
        """
        self.config = config or GatewayConfig()
        self.metrics = GatewayMetrics()

        self.logger = logging.getLogger("rockery.gateway")
        self.logger.setLevel(getattr(logging, self.config.log_level.upper()))

        self.store = store or RuleStore(self.config.database_url)
        self.store.initialize()

        self.forwarder = forwarder or self._create_forwarder()

        self.app = self._create_app()

    def _create_forwarder(self) -> UpstreamForwarder:
        ip_address, port = self.config.resolve_target()
        return UpstreamForwarder(
            authority=format_authority(ip_address, port),
            spoofed_host=self.config.spoofed_host if self.config.spoof_host_header else None,
            timeout=self.config.upstream_timeout,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        yield
        await self.forwarder.aclose()
        self.logger.info(f"Gateway stopped: {json.dumps(self.metrics.to_dict())}")

    def _create_app(self) -> FastAPI:
        """Create FastAPI application with routes."""
        # Every path that is not a management path belongs to the upstream,
        # so the generated docs routes are disabled
        app = FastAPI(
            title=SERVER_NAME,
            description="Transparent HTTP mocking gateway",
            version="1.0.0",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=self._lifespan,
        )

        @app.post(CREATE_RULE_PATH)
        async def create_rule(request: Request):
            """Create a new mocking rule."""
            return await self._create_rule(request)

        @app.post(DELETE_RULE_PATH)
        async def delete_rule(request: Request):
            """Delete the mocking rule matching the given criteria."""
            return await self._delete_rule(request)

        # Catch-all for every method, including non-interceptable ones
        app.add_route("/{path:path}", CatchAllEndpoint(self._handle_request), include_in_schema=False)

        return app

    async def _read_rule_payload(self, request: Request) -> Dict[str, Any]:
        """
        Read a management request body as a JSON object.

        Raises:
            ManagementError: 400 for a wrong content type, 422 for a body that
                is not a JSON object
        """
        if not is_json_content_type(request.headers.get('content-type')):
            raise ManagementError(400, "Request Content-Type header must be application/json")

        payload = safe_json_parse(await request.body(), default=_INVALID_JSON)
        if payload is _INVALID_JSON:
            raise ManagementError(422, "HTTP request body must be in JSON format")

        if not isinstance(payload, dict):
            raise ManagementError(422, "HTTP request body must be a JSON object")
        return payload

    async def _create_rule(self, request: Request) -> Response:
        try:
            payload = await self._read_rule_payload(request)
            rule = create_mocking_rule_from_json(payload)
        except ManagementError as e:
            return json_response(e.status_code, e.message)
        except RuleValidationError as e:
            return json_response(422, "Mocking rule is not valid", errors=e.errors)

        try:
            await run_in_threadpool(self.store.create, rule)
        except DuplicateRuleError as e:
            return json_response(422, str(e))
        except RuleStoreError as e:
            self.logger.error(f"Failed to create rule for {rule.request_method} {rule.request_url}: {e}")
            return json_response(500, str(e))

        self.metrics.rules_created += 1
        self.logger.info(f"Rule #{rule.display_id()} created for {rule.request_method} {rule.request_url}")
        return json_response(
            201,
            f"Rule #{rule.display_id()} for {rule.request_url} has been created successfully!",
            id=rule.id,
        )

    async def _delete_rule(self, request: Request) -> Response:
        try:
            payload = await self._read_rule_payload(request)
            criteria = parse_rule_criteria(payload)
        except ManagementError as e:
            return json_response(e.status_code, e.message)
        except RuleValidationError as e:
            return json_response(422, "Deletion criteria are not valid", errors=e.errors)

        try:
            found_rules = await run_in_threadpool(self.store.find, **criteria)
            if not found_rules:
                return json_response(404, "Mocking rule does not exist and has not been deleted.")
            rule = found_rules[0]
            await run_in_threadpool(self.store.delete, rule)
        except RuleStoreError as e:
            self.logger.error(f"Failed to delete rule for {criteria['method']} {criteria['url']}: {e}")
            return json_response(500, str(e))

        self.metrics.rules_deleted += 1
        self.logger.info(f"Rule #{rule.display_id()} deleted")
        return json_response(200, "A rule has been deleted successfully")

    async def _handle_request(self, request: Request) -> Response:
        """
        Serve a mocked response when a rule matches, otherwise forward upstream.

        Args:
            request: Incoming request on any path other than the management API

        Returns:
            Mocked response, relayed upstream response, or a JSON error
        """
        self.metrics.total_requests += 1

        method = request.method
        raw_path = self._raw_path(request)
        query = request.scope.get('query_string', b'').decode('latin-1') or None
        body = await request.body()

        self.logger.info(f"{method} {raw_path}{'?' + query if query else ''}")

        if method in INTERCEPTABLE_METHODS:
            try:
                # Store calls block, so they stay off the event loop
                rule = await run_in_threadpool(self._find_matching_rule, method, raw_path, query, body)
            except RuleStoreError as e:
                self.logger.error(f"Rule lookup failed for {method} {raw_path}: {e}")
                return json_response(500, str(e))

            if rule is not None:
                try:
                    return self._create_mocked_response(rule)
                except RuleIntegrityError as e:
                    self.logger.critical(str(e))
                    return json_response(500, "FATAL ERROR: Cannot generate mocked response")

        return await self._forward(request, method, raw_path, query, body)

    @staticmethod
    def _raw_path(request: Request) -> str:
        raw_path = request.scope.get('raw_path')
        if raw_path:
            return raw_path.split(b'?', 1)[0].decode('latin-1')
        return request.url.path

    def _find_matching_rule(
        self,
        method: str,
        raw_path: str,
        query: Optional[str],
        body: bytes
    ) -> Optional[MockingRule]:
        try:
            text = body.decode('utf-8')
        except UnicodeDecodeError:
            # Rules only hold text, so a binary body can never match
            return None

        found_rules = self.store.find(
            url=raw_path,
            query=query,
            method=method,
            data=normalize_request_body(text),
        )
        if not found_rules:
            return None
        return found_rules[0]

    def _create_mocked_response(self, rule: MockingRule) -> Response:
        """
        Create Response from a matched rule.

        Raises:
            RuleIntegrityError: If the stored status code cannot be sent
        """
        if not is_valid_status_code(rule.response_status_code):
            raise RuleIntegrityError(
                f"Rule #{rule.display_id()} holds invalid status code {rule.response_status_code!r}"
            )

        self.metrics.mocked_requests += 1
        self.logger.info(f"Endpoint hit! Mocking response with rule #{rule.display_id()}")
        return Response(
            content=rule.response_data if rule.response_data is not None else '-',
            status_code=rule.response_status_code,
            headers=MOCK_RESPONSE_HEADERS,
        )

    async def _forward(
        self,
        request: Request,
        method: str,
        raw_path: str,
        query: Optional[str],
        body: bytes
    ) -> Response:
        """
        Forward the request upstream and relay the answer.

        The upstream call is cancelled as soon as the client disconnects.
        """
        forwarding = asyncio.ensure_future(self.forwarder.forward(
            method,
            raw_path,
            query,
            list(request.headers.raw),
            body,
        ))
        disconnected = asyncio.ensure_future(self._wait_for_disconnect(request))
        try:
            await asyncio.wait({forwarding, disconnected}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            forwarding.cancel()
            raise
        finally:
            disconnected.cancel()

        if not forwarding.done():
            forwarding.cancel()
            await asyncio.wait({forwarding})
            self.metrics.client_disconnects += 1
            self.logger.info(f"Client disconnected, upstream request aborted for {method} {raw_path}")
            # Nobody is left to read this
            return Response(status_code=499)

        try:
            upstream = forwarding.result()
        except UpstreamError as e:
            self.metrics.upstream_failures += 1
            self.logger.error(f"Upstream request failed for {method} {raw_path}: {e}")
            return json_response(504, str(e))

        self.metrics.forwarded_requests += 1
        self.logger.debug(
            f"Relaying upstream {upstream.http_version} {upstream.status_code} for "
            f"HTTP/{request.scope.get('http_version', '1.1')} {method} {raw_path}"
        )

        response = Response(content=upstream.content, status_code=upstream.status_code)
        # Relay upstream headers verbatim, duplicates included
        response.raw_headers = list(upstream.headers)
        return response

    @staticmethod
    async def _wait_for_disconnect(request: Request) -> None:
        # The body is already read, so the next message is the disconnect
        while True:
            message = await request.receive()
            if message['type'] == 'http.disconnect':
                return

    def start(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        access_log: bool = False
    ):
        """
        Start the gateway (blocking).

        Args:
            host: Host to bind to (overrides config)
            port: Port to bind to (overrides config)
            access_log: Enable uvicorn access logging
        """
        actual_host = host or self.config.host
        actual_port = port or self.config.port

        # Relayed responses keep the upstream's Server and Date headers
        uvicorn.run(
            self.app,
            host=actual_host,
            port=actual_port,
            log_level=self.config.log_level,
            access_log=access_log,
            server_header=False,
            date_header=False,
        )

    def get_app(self) -> FastAPI:
        """
        Get the FastAPI app instance for testing or custom deployment.

        Returns:
            FastAPI application instance
        """
        return self.app


def create_gateway_server(
    target_host: str,
    target_port: int = 80,
    host: str = "localhost",
    port: int = 3333,
    spoof_host_header: bool = False,
    database_url: str = "sqlite://",
    log_level: str = "info"
) -> GatewayServer:
    """
    Convenience function to create and configure a gateway.

    Args:
        target_host: Upstream host name or IP
        target_port: Upstream port
        host: Host to bind to
        port: Port to bind to
        spoof_host_header: Rewrite the Host header to the upstream host
        database_url: SQLAlchemy URL for rule storage
        log_level: Logging level name

    Returns:
        Configured GatewayServer instance

    Example:
        server = create_gateway_server('127.0.0.1', 5000, spoof_host_header=True)
        server.start()
    """
    config = GatewayConfig(
        host=host,
        port=port,
        target_host=target_host,
        target_port=target_port,
        spoof_host_header=spoof_host_header,
        database_url=database_url,
        log_level=log_level,
    )

    return GatewayServer(config=config)
