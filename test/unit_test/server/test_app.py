import json

import httpx
import pytest
import pytest_asyncio

from toolmesh.capabilities.base import define_capability
from toolmesh.capabilities.registry import CapabilityRegistry
from toolmesh.factory import build_context
from toolmesh.protocol.messages import NOTIFY_TOOLS_CHANGED, PARSE_ERROR
from toolmesh.protocol.transport.http import SESSION_HEADER
from toolmesh.runtime.engine import ExecutionEngine
from toolmesh.server.app import EVENTS_PATH, RPC_PATH, build_app, create_app, event_stream
from toolmesh.server.dispatcher import ProtocolServer

# Mark all tests in this module as async
pytestmark = pytest.mark.asyncio


async def greet(name: str = "world") -> str:
    """Say hello."""
    return f"hello {name}"


@pytest.fixture
def server() -> ProtocolServer:
    registry = CapabilityRegistry()
    registry.register(define_capability(greet))
    return ProtocolServer(ExecutionEngine(registry))


@pytest_asyncio.fixture
async def client(server: ProtocolServer):
    app = create_app(server)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://mock") as ac:
        yield ac


def _rpc(id_, method, params=None):
    body = {"jsonrpc": "2.0", "id": id_, "method": method}
    if params is not None:
        body["params"] = params
    return body


async def test_health_check(client: httpx.AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "capabilities": 1}


async def test_request_gets_reply_in_body(client: httpx.AsyncClient):
    response = await client.post(RPC_PATH, json=_rpc(1, "tools/call", {"name": "greet", "arguments": {"name": "mesh"}}))

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == 1
    assert body["result"]["content"] == [{"type": "text", "text": "hello mesh"}]


async def test_tools_list_over_http(client: httpx.AsyncClient):
    response = await client.post(RPC_PATH, json=_rpc("a", "tools/list"))
    tools = response.json()["result"]["tools"]
    assert [t["name"] for t in tools] == ["greet"]
    assert tools[0]["description"] == "Say hello."


async def test_notification_is_accepted(client: httpx.AsyncClient):
    response = await client.post(RPC_PATH, json={"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert response.status_code == 202
    assert response.content == b""


async def test_undecodable_body_is_bad_request(client: httpx.AsyncClient):
    response = await client.post(RPC_PATH, content=b"not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    body = response.json()
    assert body["id"] is None
    assert body["error"]["code"] == PARSE_ERROR


async def test_error_reply_keeps_status_200(client: httpx.AsyncClient):
    response = await client.post(RPC_PATH, json=_rpc(3, "tools/call", {"name": "missing"}))
    assert response.status_code == 200
    assert response.json()["error"]["data"]["errorKind"] == "NotFound"


async def test_initialize_issues_session_used_as_connection(server: ProtocolServer, client: httpx.AsyncClient):
    seen = []
    handle_raw = server.handle_raw

    async def spy(raw, *, connection=None):
        seen.append(connection)
        return await handle_raw(raw, connection=connection)

    server.handle_raw = spy

    init = await client.post(RPC_PATH, json=_rpc(1, "initialize", {"clientInfo": {"name": "tests"}}))
    session = init.headers.get(SESSION_HEADER)
    ping = await client.post(RPC_PATH, json=_rpc(2, "ping"), headers={SESSION_HEADER: session})
    anonymous = await client.post(RPC_PATH, json=_rpc(3, "ping"))

    assert session
    assert SESSION_HEADER not in ping.headers
    assert SESSION_HEADER not in anonymous.headers
    assert seen == [session, session, None]


async def test_each_initialize_gets_its_own_session(client: httpx.AsyncClient):
    first = await client.post(RPC_PATH, json=_rpc(1, "initialize"))
    second = await client.post(RPC_PATH, json=_rpc(1, "initialize"))

    assert first.headers[SESSION_HEADER] != second.headers[SESSION_HEADER]


async def test_events_route_is_registered(server: ProtocolServer):
    app = create_app(server)
    paths = {route.path for route in app.routes}
    assert {RPC_PATH, EVENTS_PATH, "/health"} <= paths


async def test_event_stream_starts_with_endpoint_then_notifications(server: ProtocolServer):
    stream = event_stream(server, endpoint="/rpc?session=1")

    first = await stream.__anext__()
    server.notify_tools_changed()
    second = await stream.__anext__()
    await stream.aclose()

    assert first == {"event": "endpoint", "data": "/rpc?session=1"}
    assert second["event"] == "message"
    assert json.loads(second["data"])["method"] == NOTIFY_TOOLS_CHANGED
    assert server.notify_tools_changed() == 0


async def test_event_stream_ends_when_server_closes(server: ProtocolServer):
    stream = event_stream(server)
    assert (await stream.__anext__())["event"] == "endpoint"

    server.close()

    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


async def test_build_app_serves_builtin_capabilities(settings):
    app = build_app(settings)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://mock") as ac:
        health = await ac.get("/health")
        listed = await ac.post(RPC_PATH, json=_rpc(1, "tools/list"))
        read = await ac.post(
            RPC_PATH, json=_rpc(2, "tools/call", {"name": "read_file", "arguments": {"path": "notes.txt"}})
        )

    assert health.json() == {"status": "ok", "capabilities": 5}
    assert len(listed.json()["result"]["tools"]) == 5
    assert read.json()["result"]["structuredContent"]["content"] == "hello workspace\n"


async def test_app_startup_registers_configured_servers(settings, fake_server, tmp_path):
    servers = tmp_path / "servers.json"
    servers.write_text(json.dumps({"servers": [{"name": "db", "transport": "request", "url": "http://mock/db"}]}))
    context = build_context(
        settings.model_copy(update={"servers_file": servers}),
        transport_factory=fake_server.transport,
        include_builtins=False,
    )
    app = create_app(ProtocolServer(context.engine, context.registry), context=context)

    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://mock") as ac:
            listed = await ac.post(RPC_PATH, json=_rpc(1, "tools/list"))

    assert [t["name"] for t in listed.json()["result"]["tools"]] == ["db:migrate", "db:query"]
    assert context.pool.servers() == []
