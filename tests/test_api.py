from pathlib import Path

import httpx
import pytest


TEST_PROTO = Path(__file__).resolve().parent / "protos" / "bridge_test.proto"


@pytest.fixture
async def client(http_app):
    transport = httpx.ASGITransport(app=http_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _proto_upload(name: str, content: bytes):
    return [("proto", (name, content, "application/octet-stream"))]


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
    assert resp.headers.get("X-Request-ID")


@pytest.mark.asyncio
async def test_list_services_before_upload(client):
    resp = await client.get("/api/listServices")

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == 20101
    assert body["error"]["type"] == "DescriptorNotLoaded"


@pytest.mark.asyncio
async def test_upload_proto_then_list(client, http_app):
    resp = await client.post("/api/upload/proto", files=_proto_upload("bridge_test.proto", TEST_PROTO.read_bytes()))

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["code"] == 0
    names = [s["name"] for s in body["data"]["services"]]
    assert names == ["bridge.test.TestService", "bridge.test.RichService"]
    echo = body["data"]["services"][0]["methods"][0]
    assert echo == {
        "name": "Echo",
        "shape": "unary",
        "input_type": "bridge.test.EchoMessage",
        "output_type": "bridge.test.EchoMessage",
        "path": "/bridge.test.TestService/Echo",
    }

    listing = (await client.get("/api/listServices")).json()
    assert listing["bridge.test.RichService"] == ["Store"]
    assert "Chat" in listing["bridge.test.TestService"]

    # workspaces are removed right away with cleanup_delay_s=0
    upload_dir = Path(http_app.state.proto_service._upload_dir)
    assert not upload_dir.exists() or not any(upload_dir.iterdir())


@pytest.mark.asyncio
async def test_upload_descriptor_set(client, descriptor_set):
    resp = await client.post(
        "/api/upload/proto", files=_proto_upload("bundle.protoset", descriptor_set.SerializeToString())
    )

    assert resp.status_code == 200, resp.text
    assert len(resp.json()["data"]["services"]) == 2


@pytest.mark.asyncio
async def test_upload_with_compile_error(client):
    source = b'syntax = "proto3";\nmessage Broken { Unknown x = 1; }\n'
    resp = await client.post("/api/upload/proto", files=_proto_upload("broken.proto", source))

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == 20100
    assert body["error"]["type"] == "ParseError"
    assert "Unknown" in body["message"]


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_files(client):
    resp = await client.post("/api/upload/proto", files=_proto_upload("notes.txt", b"hello"))
    assert resp.status_code == 400
    assert "Unsupported file type" in resp.json()["message"]
    assert resp.json()["error"]["field"] == "proto"


@pytest.mark.asyncio
async def test_upload_too_large(client):
    resp = await client.post("/api/upload/proto", files=_proto_upload("big.proto", b" " * (64 * 1024 + 1)))

    assert resp.status_code == 400
    assert resp.json()["error"]["details"]["max_size"] == 64 * 1024


@pytest.mark.asyncio
async def test_failed_upload_keeps_previous_registry(client):
    ok = await client.post("/api/upload/proto", files=_proto_upload("bridge_test.proto", TEST_PROTO.read_bytes()))
    assert ok.status_code == 200

    bad = await client.post("/api/upload/proto", files=_proto_upload("broken.proto", b"not a proto"))
    assert bad.status_code == 400

    listing = (await client.get("/api/listServices")).json()
    assert "bridge.test.TestService" in listing


@pytest.mark.asyncio
async def test_reflection_loads_example_server(client, example_server):
    resp = await client.post("/api/reflection", json={"target": example_server})

    assert resp.status_code == 200, resp.text
    services = resp.json()["data"]["services"]
    assert [s["name"] for s in services] == ["example.ExampleService"]
    shapes = {m["name"]: m["shape"] for m in services[0]["methods"]}
    assert shapes == {
        "UnaryCall": "unary",
        "ServerStreamingCall": "server_stream",
        "ClientStreamingCall": "client_stream",
        "BidirectionalStreamingCall": "bidi",
    }


@pytest.mark.asyncio
async def test_reflection_unreachable_target(client, http_app):
    from infrastructure.grpc.invoker import DynamicInvoker
    from infrastructure.grpc.reflection import ReflectionLoader

    http_app.state.proto_service._reflection = ReflectionLoader(DynamicInvoker(connect_timeout_s=0.3))
    resp = await client.post("/api/reflection", json={"target": "127.0.0.1:1"})

    assert resp.status_code == 502
    assert resp.json()["error"]["type"] == "ConnectError"


@pytest.mark.asyncio
async def test_reflection_requires_target(client):
    resp = await client.post("/api/reflection", json={"metadata": {}})

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_sessions_listing_is_empty(client):
    resp = await client.get("/api/sessions")

    assert resp.status_code == 200
    assert resp.json()["data"] == []
