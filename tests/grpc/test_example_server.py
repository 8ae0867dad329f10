import asyncio

import grpc
import pytest
from grpc_health.v1 import health_pb2, health_pb2_grpc

from domain.session.entity import SessionState
from grpc_app.server import create_server
from infrastructure.grpc.reflection import ReflectionLoader
from shared.codes import BusinessCode


SERVICE = "example.ExampleService"


@pytest.fixture
async def secured_server():
    server, port = await create_server("127.0.0.1:0", auth_token="tok")
    await server.start()
    try:
        yield f"127.0.0.1:{port}"
    finally:
        await server.stop(grace=None)


async def _load(bridge, target: str) -> None:
    descriptor_set = await ReflectionLoader(bridge.invoker).fetch(target)
    bridge.registry.register(descriptor_set)


def _init(target: str, method: str, **extra) -> dict:
    return {"target": target, "service": SERVICE, "method": method, **extra}


@pytest.mark.asyncio
async def test_reflection_lists_example_service(invoker, example_server):
    descriptor_set = await ReflectionLoader(invoker).fetch(example_server)

    names = [f.name for f in descriptor_set.file]
    assert names == ["example.proto"]
    assert [s.name for s in descriptor_set.file[0].service] == ["ExampleService"]


@pytest.mark.asyncio
async def test_unary_call(bridge, example_server):
    await _load(bridge, example_server)
    session, tunnel = await bridge.run(_init(example_server, "UnaryCall"), {"message": "hello"})

    assert tunnel.sent[1:] == [{"message": "Unary Response: hello"}]
    assert session.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_server_streaming_call(bridge, example_server):
    await _load(bridge, example_server)
    _, tunnel = await bridge.run(_init(example_server, "ServerStreamingCall"), {"message": "x"})

    assert tunnel.sent[1:6] == [{"message": f"Stream {i} for: x"} for i in range(1, 6)]
    assert tunnel.sent[6]["type"] == "system"


@pytest.mark.asyncio
async def test_client_streaming_call(bridge, example_server):
    await _load(bridge, example_server)
    _, tunnel = await bridge.run(
        _init(example_server, "ClientStreamingCall"),
        {"message": "a"},
        {"message": "b"},
        {"message": "c"},
        "__END__",
    )

    assert tunnel.sent[1:] == [{"message": "Received: [a b c]"}]


@pytest.mark.asyncio
async def test_bidirectional_streaming_call(bridge, example_server):
    await _load(bridge, example_server)
    _, tunnel = await bridge.run(
        _init(example_server, "BidirectionalStreamingCall"), {"message": "ping"}, {"message": "pong"}, "__END__"
    )

    assert tunnel.sent[1:3] == [{"message": "Echo: ping"}, {"message": "Echo: pong"}]


@pytest.mark.asyncio
async def test_auth_interceptor_covers_streams(bridge, secured_server):
    # reflection stays anonymous so definitions can still be loaded
    await _load(bridge, secured_server)

    _, missing = await bridge.run(_init(secured_server, "ServerStreamingCall"), {"message": "x"})
    assert missing.sent[-1]["code"] == BusinessCode.AUTH_REJECTED
    assert missing.sent[-1]["content"].startswith("UNAUTHENTICATED")

    wrong = _init(secured_server, "BidirectionalStreamingCall", auth={"type": "bearer", "token": "nope"})
    _, rejected = await bridge.run(wrong, {"message": "x"}, "__END__")
    assert rejected.sent[-1]["code"] == BusinessCode.AUTH_REJECTED
    assert rejected.sent[-1]["content"].startswith("PERMISSION_DENIED")

    ok = _init(secured_server, "ClientStreamingCall", auth={"type": "bearer", "token": "tok"})
    _, accepted = await bridge.run(ok, {"message": "a"}, "__END__")
    assert accepted.sent[-1] == {"message": "Received: [a]"}


@pytest.mark.asyncio
async def test_health_and_request_id(bridge, example_server):
    await _load(bridge, example_server)
    codec = bridge.registry.snapshot().codec

    async with grpc.aio.insecure_channel(example_server) as channel:
        health = health_pb2_grpc.HealthStub(channel)
        reply = await health.Check(health_pb2.HealthCheckRequest(service=SERVICE))
        assert reply.status == health_pb2.HealthCheckResponse.SERVING

        call = channel.unary_unary(f"/{SERVICE}/UnaryCall")(
            codec.encode("example.Request", {"message": "id"}),
            metadata=(("x-request-id", "req-123"),),
        )
        body = await asyncio.wait_for(call, 5)
        assert codec.decode("example.Response", body) == {"message": "Unary Response: id"}
        trailing = dict(await call.trailing_metadata())
        assert trailing["x-request-id"] == "req-123"
