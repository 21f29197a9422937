"""
Tests for Rockery Mocking Gateway

Tests the FastAPI-based gateway including:
- Rule management API (create / delete)
- Mock-or-forward dispatching
- NULL-aware query and body matching
- Upstream relaying and failures
- Metrics tracking
- Client disconnects, HTTP/1.0 clients and blocking store calls
"""

import asyncio
import socket
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from rockery.common import ConfigurationError
from rockery.gateway.forwarder import UpstreamForwarder
from rockery.gateway.server import (
    GatewayServer,
    GatewayMetrics,
    create_gateway_server,
    CREATE_RULE_PATH,
    DELETE_RULE_PATH,
)
from rockery.gateway.settings import GatewayConfig
from rockery.gateway.store import RuleStore, RuleStoreError


class FakeUpstream:
    """Records forwarded requests and answers like a real backend."""

    def __init__(self):
        self.requests = []
        self.fail = False

    def __call__(self, request: httpx.Request):
        if self.fail:
            raise httpx.ConnectError('Connection refused', request=request)
        self.requests.append(request)
        body = f"upstream {request.method} {request.url.raw_path.decode()}".encode()
        return httpx.Response(
            200,
            headers=[('x-upstream', 'yes'), ('set-cookie', 'a=1'), ('set-cookie', 'b=2')],
            stream=httpx.ByteStream(body),
        )


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def store():
    rule_store = RuleStore()
    rule_store.initialize()
    return rule_store


@pytest.fixture
def server(upstream, store):
    """Gateway with in-memory store and a fake upstream."""
    forwarder = UpstreamForwarder('127.0.0.1:5000', transport=httpx.MockTransport(upstream))
    return GatewayServer(GatewayConfig(), store=store, forwarder=forwarder)


@pytest.fixture
def client(server):
    with TestClient(server.app) as test_client:
        yield test_client


class HangingForwarder:
    """Upstream that never answers; records whether it was cancelled."""

    def __init__(self):
        self.cancelled = False

    async def forward(self, *args):
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    async def aclose(self):
        pass


def call_app(server, method='GET', path='/', http_version='1.1', messages=None):
    """Drive the ASGI app directly with a hand-built scope; returns sent messages."""
    scope = {
        'type': 'http',
        'asgi': {'version': '3.0'},
        'http_version': http_version,
        'method': method,
        'scheme': 'http',
        'path': path,
        'raw_path': path.encode(),
        'root_path': '',
        'query_string': b'',
        'headers': [(b'host', b'gateway.local')],
        'client': ('127.0.0.1', 50000),
        'server': ('gateway.local', 3333),
    }
    incoming = list(messages or [{'type': 'http.request', 'body': b'', 'more_body': False}])
    sent = []

    async def receive():
        if incoming:
            return incoming.pop(0)
        # Connection stays open until the response is sent
        await asyncio.Event().wait()

    async def send(message):
        sent.append(message)

    async def run():
        try:
            await server.app(scope, receive, send)
        finally:
            await server.forwarder.aclose()

    asyncio.run(run())
    return sent


def ping_rule(**overrides):
    payload = {
        '_rockery_request_url': '/ping',
        '_rockery_request_method': 'GET',
        '_rockery_response_status_code': 200,
        '_rockery_response_data': {'ok': True},
    }
    payload.update(overrides)
    return payload


class TestGatewayServer:
    """Test GatewayServer construction."""

    def test_server_initialization(self, server, store):
        assert server.store is store
        assert server.config.port == 3333
        assert isinstance(server.metrics, GatewayMetrics)

    def test_get_app(self, server):
        app = server.get_app()

        assert app is server.app
        assert hasattr(app, 'routes')

    def test_create_gateway_server(self):
        server = create_gateway_server('127.0.0.1', 5000, port=3000, spoof_host_header=True)

        assert server.config.port == 3000
        assert server.forwarder.authority == '127.0.0.1:5000'
        assert server.forwarder.spoofed_host == '127.0.0.1:5000'
        assert server.store.count() == 0

    def test_unresolvable_target_is_fatal(self):
        config = GatewayConfig(target_host='does-not-exist.invalid')

        with patch('rockery.common.utils.socket.getaddrinfo', side_effect=socket.gaierror('Name or service not known')):
            with pytest.raises(ConfigurationError):
                GatewayServer(config)


class TestCreateRule:
    """Test the create-rule endpoint."""

    def test_create_rule(self, client, store):
        response = client.post(CREATE_RULE_PATH, json=ping_rule())

        assert response.status_code == 201
        data = response.json()
        assert data['id'] == 1
        assert 'Rule #1 for /ping' in data['msg']
        assert store.count() == 1

    def test_wrong_content_type(self, client, store):
        response = client.post(CREATE_RULE_PATH, content='{}', headers={'Content-Type': 'text/plain'})

        assert response.status_code == 400
        assert 'application/json' in response.json()['msg']
        assert store.count() == 0

    def test_content_type_with_charset_accepted(self, client):
        response = client.post(
            CREATE_RULE_PATH,
            content='{"_rockery_request_url": "/a", "_rockery_request_method": "GET", '
                    '"_rockery_response_status_code": 200, "_rockery_response_data": "a"}',
            headers={'Content-Type': 'application/json; charset=utf-8'},
        )

        assert response.status_code == 201

    def test_malformed_json(self, client):
        response = client.post(CREATE_RULE_PATH, content='{not json', headers={'Content-Type': 'application/json'})

        assert response.status_code == 422
        assert 'JSON format' in response.json()['msg']

    def test_non_object_json(self, client):
        response = client.post(CREATE_RULE_PATH, json=[1, 2, 3])

        assert response.status_code == 422

    def test_validation_errors_aggregated(self, client, store):
        payload = ping_rule()
        del payload['_rockery_request_method']
        del payload['_rockery_response_status_code']

        response = client.post(CREATE_RULE_PATH, json=payload)

        assert response.status_code == 422
        errors = response.json()['errors']
        assert len(errors) == 2
        assert len(set(errors)) == 2
        assert store.count() == 0

    def test_duplicate_rule(self, client, store):
        assert client.post(CREATE_RULE_PATH, json=ping_rule()).status_code == 201

        response = client.post(CREATE_RULE_PATH, json=ping_rule(_rockery_response_status_code=500))

        assert response.status_code == 422
        assert 'already exists' in response.json()['msg']
        assert store.count() == 1

    def test_store_failure(self, client, store):
        with patch.object(store, 'create', side_effect=RuleStoreError('Database failed to perform insert')):
            response = client.post(CREATE_RULE_PATH, json=ping_rule())

        assert response.status_code == 500
        assert response.json()['msg'] == 'Database failed to perform insert'

    def test_get_on_management_path_is_forwarded(self, client, upstream):
        response = client.get(CREATE_RULE_PATH)

        assert response.status_code == 200
        assert len(upstream.requests) == 1


class TestDeleteRule:
    """Test the delete-rule endpoint."""

    def test_delete_rule(self, client, store):
        client.post(CREATE_RULE_PATH, json=ping_rule())
        client.post(CREATE_RULE_PATH, json=ping_rule(_rockery_request_url='/other'))

        response = client.post(DELETE_RULE_PATH, json={
            '_rockery_request_url': '/ping',
            '_rockery_request_method': 'GET',
        })

        assert response.status_code == 200
        assert store.count() == 1
        assert store.find(url='/ping', method='GET') == []

    def test_delete_missing_rule(self, client):
        response = client.post(DELETE_RULE_PATH, json={
            '_rockery_request_url': '/ping',
            '_rockery_request_method': 'GET',
        })

        assert response.status_code == 404

    def test_delete_uses_exact_matching(self, client, store):
        """Test that omitted query only deletes a rule without query."""
        client.post(CREATE_RULE_PATH, json=ping_rule(_rockery_request_query='a=1'))

        response = client.post(DELETE_RULE_PATH, json={
            '_rockery_request_url': '/ping',
            '_rockery_request_method': 'GET',
        })

        assert response.status_code == 404
        assert store.count() == 1

    def test_delete_validation_error(self, client):
        response = client.post(DELETE_RULE_PATH, json={'_rockery_request_method': 'TRACE'})

        assert response.status_code == 422
        assert len(response.json()['errors']) == 2

    def test_delete_wrong_content_type(self, client):
        response = client.post(DELETE_RULE_PATH, data={'a': '1'})

        assert response.status_code == 400

    def test_delete_store_failure(self, client, store):
        client.post(CREATE_RULE_PATH, json=ping_rule())

        with patch.object(store, 'delete', side_effect=RuleStoreError('Database failed to perform delete')):
            response = client.post(DELETE_RULE_PATH, json={
                '_rockery_request_url': '/ping',
                '_rockery_request_method': 'GET',
            })

        assert response.status_code == 500


class TestMockOrForward:
    """Test the mock-or-forward path."""

    def test_ping_round_trip(self, client, store, upstream):
        """Create, hit the mock, delete, and fall back to the upstream."""
        client.post(CREATE_RULE_PATH, json=ping_rule())
        assert store.count() == 1

        mocked = client.get('/ping')

        assert mocked.status_code == 200
        assert mocked.text == '{"ok":true}'
        assert mocked.headers['x-mocked'] == '1'
        assert mocked.headers['content-type'] == 'application/json; charset=UTF-8'
        assert mocked.headers['access-control-allow-origin'] == '*'
        assert mocked.headers['access-control-allow-headers'] == '*'
        assert mocked.headers['access-control-allow-methods'] == 'GET, PUT, POST, DELETE, HEAD, OPTIONS'
        assert mocked.headers['server'] == 'Rockery Mocking Gateway'
        assert upstream.requests == []

        client.post(DELETE_RULE_PATH, json={'_rockery_request_url': '/ping', '_rockery_request_method': 'GET'})
        forwarded = client.get('/ping')

        assert forwarded.status_code == 200
        assert forwarded.text == 'upstream GET /ping'
        assert 'x-mocked' not in forwarded.headers
        assert len(upstream.requests) == 1

    def test_custom_status_code(self, client):
        client.post(CREATE_RULE_PATH, json=ping_rule(_rockery_response_status_code=299))

        response = client.get('/ping')

        assert response.status_code == 299

    def test_rule_without_query_ignores_query_requests(self, client, upstream):
        client.post(CREATE_RULE_PATH, json=ping_rule())

        response = client.get('/ping?verbose=1')

        assert 'x-mocked' not in response.headers
        assert str(upstream.requests[0].url) == 'http://127.0.0.1:5000/ping?verbose=1'

    def test_rule_with_query(self, client, upstream):
        client.post(CREATE_RULE_PATH, json=ping_rule(_rockery_request_query='verbose=1'))

        assert client.get('/ping?verbose=1').headers.get('x-mocked') == '1'
        assert 'x-mocked' not in client.get('/ping').headers
        assert 'x-mocked' not in client.get('/ping?verbose=2').headers

    def test_body_matching(self, client, upstream):
        client.post(CREATE_RULE_PATH, json=ping_rule(
            _rockery_request_url='/users',
            _rockery_request_method='POST',
            _rockery_request_data={'name': 'Jane', 'age': 30},
            _rockery_response_status_code=201,
            _rockery_response_data={'id': 456},
        ))

        matched = client.post('/users', content=' {"age":30,"name":"Jane"}\n')
        unmatched = client.post('/users', content='{"name": "John"}')
        empty = client.post('/users')

        assert matched.status_code == 201
        assert matched.json() == {'id': 456}
        assert 'x-mocked' not in unmatched.headers
        assert 'x-mocked' not in empty.headers
        assert len(upstream.requests) == 2
        assert upstream.requests[0].content == b'{"name": "John"}'

    def test_body_compared_as_sent(self, client, upstream):
        """Test that a reformatted JSON body does not match the stored text."""
        client.post(CREATE_RULE_PATH, json=ping_rule(
            _rockery_request_url='/users',
            _rockery_request_method='POST',
            _rockery_request_data={'a': 1, 'b': 2},
        ))

        response = client.post('/users', content='{ "b" : 2, "a":1 }')

        assert 'x-mocked' not in response.headers
        assert upstream.requests[0].content == b'{ "b" : 2, "a":1 }'

    @pytest.mark.parametrize('method', ['POST', 'PUT', 'PATCH', 'DELETE'])
    def test_mocks_methods_with_bodies(self, client, upstream, method):
        client.post(CREATE_RULE_PATH, json=ping_rule(
            _rockery_request_url='/b',
            _rockery_request_method=method,
            _rockery_request_data={'x': 1},
            _rockery_response_status_code=202,
        ))

        response = client.request(method, '/b', content='{"x":1}')

        assert response.status_code == 202
        assert response.headers['x-mocked'] == '1'
        assert upstream.requests == []

    @pytest.mark.parametrize('method', ['POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS', 'PROPFIND'])
    def test_unmatched_methods_forwarded(self, client, upstream, method):
        response = client.request(method, '/b')

        assert response.status_code == 200
        assert response.text == f'upstream {method} /b'
        assert upstream.requests[0].method == method

    def test_string_response_data_is_json(self, client):
        client.post(CREATE_RULE_PATH, json=ping_rule(_rockery_request_url='/s', _rockery_response_data='hello'))

        response = client.get('/s')

        assert response.text == '"hello"'
        assert response.json() == 'hello'

    def test_rule_without_data_ignores_requests_with_body(self, client):
        client.post(CREATE_RULE_PATH, json=ping_rule(_rockery_request_method='DELETE'))

        assert client.request('DELETE', '/ping').headers.get('x-mocked') == '1'
        assert 'x-mocked' not in client.request('DELETE', '/ping', content='payload').headers

    def test_non_interceptable_method_skips_lookup(self, client, store, upstream):
        with patch.object(store, 'find', wraps=store.find) as find:
            response = client.options('/ping')

        find.assert_not_called()
        assert response.status_code == 200
        assert upstream.requests[0].method == 'OPTIONS'

    def test_custom_method_forwarded(self, client, upstream):
        response = client.request('PROPFIND', '/dav')

        assert response.status_code == 200
        assert upstream.requests[0].method == 'PROPFIND'

    def test_first_match_wins(self, client, store):
        client.post(CREATE_RULE_PATH, json=ping_rule(_rockery_response_data='first'))
        with store.engine.begin() as conn:
            conn.execute(store.table.insert().values(
                request_method='GET', request_url='/ping',
                response_status_code=200, response_data='second',
            ))

        assert client.get('/ping').json() == 'first'

    def test_corrupted_status_code(self, client, store):
        with store.engine.begin() as conn:
            conn.execute(store.table.insert().values(
                request_method='GET', request_url='/broken',
                response_status_code=1000, response_data='x',
            ))

        response = client.get('/broken')

        assert response.status_code == 500
        assert 'Cannot generate mocked response' in response.json()['msg']

    def test_lookup_failure(self, client, store):
        with patch.object(store, 'find', side_effect=RuleStoreError('no such table: mocking_rules')):
            response = client.get('/ping')

        assert response.status_code == 500

    def test_docs_paths_are_forwarded(self, client, upstream):
        client.get('/docs')
        client.get('/openapi.json')

        assert [r.url.path for r in upstream.requests] == ['/docs', '/openapi.json']


class TestForwarding:
    """Test relaying to the upstream."""

    def test_upstream_response_relayed(self, client):
        response = client.get('/anything')

        assert response.status_code == 200
        assert response.headers['x-upstream'] == 'yes'
        assert response.headers.get_list('set-cookie') == ['a=1', 'b=2']
        assert response.text == 'upstream GET /anything'

    def test_request_headers_forwarded(self, client, upstream):
        client.get('/anything', headers={'X-Request-Id': 'abc123', 'Authorization': 'Bearer t'})

        forwarded = upstream.requests[0].headers
        assert forwarded['x-request-id'] == 'abc123'
        assert forwarded['authorization'] == 'Bearer t'
        assert forwarded['host'] == 'testserver'

    def test_host_header_spoofing(self, upstream, store):
        forwarder = UpstreamForwarder(
            '127.0.0.1:5000',
            spoofed_host='backend.internal',
            transport=httpx.MockTransport(upstream),
        )
        server = GatewayServer(GatewayConfig(), store=store, forwarder=forwarder)

        with TestClient(server.app) as client:
            client.get('/anything')

        assert upstream.requests[0].headers['host'] == 'backend.internal'

    def test_upstream_failure(self, client, server, upstream):
        upstream.fail = True

        response = client.get('/anything')

        assert response.status_code == 504
        assert 'ConnectError' in response.json()['msg']
        assert server.metrics.upstream_failures == 1


class TestGatewayMetrics:
    """Test metrics tracking."""

    def test_metrics_track_requests(self, client, server):
        client.post(CREATE_RULE_PATH, json=ping_rule())
        client.get('/ping')
        client.get('/ping')
        client.get('/elsewhere')
        client.post(DELETE_RULE_PATH, json={'_rockery_request_url': '/ping', '_rockery_request_method': 'GET'})

        data = server.metrics.to_dict()

        assert data['total_requests'] == 3
        assert data['mocked_requests'] == 2
        assert data['forwarded_requests'] == 1
        assert data['rules_created'] == 1
        assert data['rules_deleted'] == 1
        assert data['mock_rate'] == 66.67

    def test_empty_metrics(self):
        data = GatewayMetrics().to_dict()

        assert data['total_requests'] == 0
        assert data['mock_rate'] == 0
        assert 'uptime_seconds' in data


class TestConnectionHandling:
    """Test protocol versions, disconnects and blocking store calls."""

    def test_http10_request_forwarded(self, server, upstream):
        """Test an HTTP/1.0 client is relayed over the HTTP/1.1 upstream leg."""
        sent = call_app(server, path='/legacy', http_version='1.0')

        assert sent[0]['type'] == 'http.response.start'
        assert sent[0]['status'] == 200
        assert b''.join(m.get('body', b'') for m in sent[1:]) == b'upstream GET /legacy'
        assert upstream.requests[0].url.path == '/legacy'

    def test_client_disconnect_aborts_upstream(self, store):
        forwarder = HangingForwarder()
        server = GatewayServer(GatewayConfig(), store=store, forwarder=forwarder)

        call_app(server, path='/slow', messages=[
            {'type': 'http.request', 'body': b'', 'more_body': False},
            {'type': 'http.disconnect'},
        ])

        assert forwarder.cancelled is True
        assert server.metrics.client_disconnects == 1
        assert server.metrics.forwarded_requests == 0

    def test_store_calls_run_off_event_loop(self, client, store):
        threads_with_loop = []
        original_find = store.find
        original_create = store.create

        def record_loop():
            try:
                asyncio.get_running_loop()
                threads_with_loop.append(True)
            except RuntimeError:
                threads_with_loop.append(False)

        def find(**criteria):
            record_loop()
            return original_find(**criteria)

        def create(rule):
            record_loop()
            return original_create(rule)

        with patch.object(store, 'find', side_effect=find), patch.object(store, 'create', side_effect=create):
            client.post(CREATE_RULE_PATH, json=ping_rule())
            assert client.get('/ping').headers['x-mocked'] == '1'

        # create + its lookup of the mocked request
        assert threads_with_loop == [False, False]
