"""Pytest bootstrap configuration.

Fixtures compile the test definitions with the real protoc compiler,
start in-process ``grpc.aio`` servers on ephemeral ports (port 0) and
drive the session bridge through an in-memory tunnel.
"""
import os

# Uploaded workspaces are removed right after compilation
os.environ.setdefault("PROTO__CLEANUP_DELAY_S", "0")

import asyncio
import json
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import grpc
import pytest

from application.ports.tunnel import TunnelClosed
from application.services.proto_service import ProtoService
from application.services.session_bridge import SessionBridge
from domain.session.entity import Session
from grpc_app.handlers import build_generic_handler
from infrastructure.grpc.compiler import ProtoCompiler
from infrastructure.grpc.invoker import DynamicInvoker
from infrastructure.grpc.reflection import ReflectionLoader
from infrastructure.grpc.registry import ProtoRegistry, RegistrySnapshot, build_snapshot
from infrastructure.realtime.session_manager import SessionManager


PROTO_DIR = Path(__file__).resolve().parent / "protos"
TEST_PROTO = PROTO_DIR / "bridge_test.proto"
TEST_SERVICE = "bridge.test.TestService"
SECRET_TOKEN = "s3cret"

_compiled: dict = {}


async def compile_test_descriptor_set(tmp_path: Path):
    if "set" not in _compiled:
        _compiled["set"] = await ProtoCompiler().compile(
            PROTO_DIR, [TEST_PROTO], output=tmp_path / "bridge_test.protoset"
        )
    return _compiled["set"]


@pytest.fixture
async def descriptor_set(tmp_path):
    return await compile_test_descriptor_set(tmp_path)


@pytest.fixture
def snapshot(descriptor_set) -> RegistrySnapshot:
    return build_snapshot(descriptor_set)


@pytest.fixture
def registry(descriptor_set) -> ProtoRegistry:
    reg = ProtoRegistry()
    reg.register(descriptor_set)
    return reg


class FakeTestService:
    """Behaviors for bridge.test.TestService."""

    def __init__(self, snapshot: RegistrySnapshot) -> None:
        codec = snapshot.codec
        self.echo_cls = codec.message_class("bridge.test.EchoMessage")
        self.tag_cls = codec.message_class("bridge.test.TagReply")
        self.sum_cls = codec.message_class("bridge.test.SumReply")
        self.ticker_cancelled = asyncio.Event()
        self.ticker_sent = 0

    async def Echo(self, request, context):
        return self.echo_cls(msg=request.msg)

    async def Tagged(self, request, context):
        for i in range(1, request.count + 1):
            yield self.tag_cls(index=i, tag=f"{request.prefix}{i}")

    async def Ticker(self, request, context):
        try:
            while True:
                self.ticker_sent += 1
                yield self.tag_cls(index=self.ticker_sent, tag=request.prefix)
                await asyncio.sleep(0.01)
        finally:
            self.ticker_cancelled.set()

    async def Sum(self, request_iterator, context):
        total = 0
        delay_ms = 0
        async for request in request_iterator:
            total += request.n
            delay_ms = max(delay_ms, request.delay_ms)
        if delay_ms:
            await asyncio.sleep(delay_ms / 1000)
        return self.sum_cls(sum=total)

    async def Chat(self, request_iterator, context):
        async for request in request_iterator:
            yield self.echo_cls(msg=request.msg)

    async def Inspect(self, request, context):
        md = dict(context.invocation_metadata() or [])
        return self.echo_cls(msg=md.get("authorization", ""))

    async def Fail(self, request, context):
        await context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"bad request: {request.msg}")

    async def Secret(self, request, context):
        md = dict(context.invocation_metadata() or [])
        if md.get("authorization") != f"Bearer {SECRET_TOKEN}":
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "token required")
        return self.echo_cls(msg="opened")


@pytest.fixture
async def test_server(snapshot) -> AsyncIterator[tuple[str, FakeTestService]]:
    """Start the fake TestService on an ephemeral port."""
    servicer = FakeTestService(snapshot)
    server = grpc.aio.server()
    server.add_generic_rpc_handlers(
        (build_generic_handler(snapshot, snapshot.services[TEST_SERVICE], servicer),)
    )
    port = server.add_insecure_port("127.0.0.1:0")
    await server.start()
    try:
        yield f"127.0.0.1:{port}", servicer
    finally:
        await server.stop(grace=None)


class FakeTunnel:
    """In-memory tunnel: the test plays the WebSocket client."""

    def __init__(self) -> None:
        self._inbound: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self.sent: list[Any] = []
        self._sent_event = asyncio.Event()
        self.closed = asyncio.Event()
        self.close_code: Optional[int] = None
        self.peer_gone = False
        self.late_sends = 0

    # client side
    def push(self, *frames: Any) -> None:
        for frame in frames:
            self._inbound.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def disconnect(self) -> None:
        self._inbound.put_nowait(None)

    async def wait_for_frames(self, count: int, timeout: float = 5.0) -> list[Any]:
        async def _wait() -> None:
            while len(self.sent) < count:
                self._sent_event.clear()
                await self._sent_event.wait()

        await asyncio.wait_for(_wait(), timeout)
        return list(self.sent)

    # Tunnel protocol
    async def receive_text(self) -> str:
        item = await self._inbound.get()
        if item is None:
            self.peer_gone = True
            raise TunnelClosed(1001, "client went away")
        return item

    async def send_text(self, text: str) -> None:
        if self.peer_gone or self.closed.is_set():
            self.late_sends += 1
            raise TunnelClosed(1006, "tunnel is gone")
        self.sent.append(json.loads(text))
        self._sent_event.set()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code
        self.closed.set()


class BridgeHarness:
    def __init__(self, registry: ProtoRegistry, invoker: DynamicInvoker) -> None:
        self.registry = registry
        self.invoker = invoker

    def start(self, invoker: Optional[DynamicInvoker] = None) -> tuple[Session, FakeTunnel, SessionBridge, asyncio.Task]:
        session = Session()
        tunnel = FakeTunnel()
        bridge = SessionBridge(session, tunnel, registry=self.registry, invoker=invoker or self.invoker)
        task = asyncio.create_task(bridge.run())
        return session, tunnel, bridge, task

    async def run(
        self, *frames: Any, timeout: float = 5.0, invoker: Optional[DynamicInvoker] = None
    ) -> tuple[Session, FakeTunnel]:
        """Push ``frames`` and wait for the session to finish on its own."""
        session, tunnel, _, task = self.start(invoker)
        tunnel.push(*frames)
        await asyncio.wait_for(task, timeout)
        return session, tunnel


@pytest.fixture
def invoker() -> DynamicInvoker:
    return DynamicInvoker(connect_timeout_s=2.0, call_timeout_s=10.0)


@pytest.fixture
def bridge(registry, invoker) -> BridgeHarness:
    return BridgeHarness(registry, invoker)


def init_frame(target: str, method: str, service: str = TEST_SERVICE, **extra: Any) -> dict:
    return {"target": target, "service": service, "method": method, **extra}


@pytest.fixture
def make_init():
    return init_frame


@pytest.fixture
async def example_server() -> AsyncIterator[str]:
    """The bundled example.ExampleService (reflection on, no auth)."""
    from grpc_app.server import create_server

    server, port = await create_server("127.0.0.1:0", auth_token="")
    await server.start()
    try:
        yield f"127.0.0.1:{port}"
    finally:
        await server.stop(grace=None)


@pytest.fixture
def http_app(tmp_path, invoker):
    """FastAPI app with fresh singletons (lifespan is not run by the test transports)."""
    from main import app

    registry = ProtoRegistry()
    app.state.proto_registry = registry
    app.state.proto_service = ProtoService(
        registry=registry,
        compiler=ProtoCompiler(),
        reflection=ReflectionLoader(invoker),
        upload_dir=str(tmp_path / "uploads"),
        max_upload_bytes=64 * 1024,
        cleanup_delay_s=0,
    )
    app.state.session_manager = SessionManager(partial(SessionBridge, registry=registry, invoker=invoker))
    try:
        yield app
    finally:
        app.state.proto_registry = None
        app.state.proto_service = None
        app.state.session_manager = None
