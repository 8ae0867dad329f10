from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Optional, Sequence

import grpc
from grpc_health.v1 import health, health_pb2, health_pb2_grpc
from grpc_reflection.v1alpha import reflection

from core.config import settings
from core.logging_config import get_logger
from grpc_app.handlers import build_generic_handler
from grpc_app.interceptors.auth import AuthInterceptor
from grpc_app.interceptors.logging import LoggingInterceptor
from grpc_app.interceptors.request_id import RequestIdInterceptor
from grpc_app.services.example_service import SERVICE_NAME, ExampleService
from infrastructure.grpc.compiler import ProtoCompiler
from infrastructure.grpc.registry import RegistrySnapshot, build_snapshot


logger = get_logger(__name__)

PROTO_DIR = Path(__file__).resolve().parent / "protos"
EXAMPLE_PROTO = PROTO_DIR / "example.proto"


async def load_example_snapshot() -> RegistrySnapshot:
    """Compile the bundled example definition at startup; no generated stubs."""
    with tempfile.TemporaryDirectory(prefix="grpc-example-") as tmp:
        descriptor_set = await ProtoCompiler(timeout_s=settings.proto.compile_timeout_s).compile(
            PROTO_DIR, [EXAMPLE_PROTO], output=Path(tmp) / "example.protoset"
        )
    return build_snapshot(descriptor_set)


def _server_credentials() -> grpc.ServerCredentials:
    tls = settings.grpc.tls
    if not (tls.cert and tls.key):
        raise RuntimeError("GRPC TLS enabled but cert/key not provided")
    with open(tls.cert, "rb") as f:
        cert_chain = f.read()
    with open(tls.key, "rb") as f:
        private_key = f.read()
    root_certificates = None
    if tls.ca:
        with open(tls.ca, "rb") as f:
            root_certificates = f.read()
    return grpc.ssl_server_credentials(
        [(private_key, cert_chain)],
        root_certificates=root_certificates,
        require_client_auth=bool(root_certificates),
    )


async def create_server(
    address: Optional[str] = None,
    *,
    auth_token: Optional[str] = None,
) -> tuple[grpc.aio.Server, int]:
    """Build the example server; returns it with the bound port (useful with port 0)."""
    interceptors: Sequence[grpc.aio.ServerInterceptor] = (
        RequestIdInterceptor(),
        LoggingInterceptor(),
        AuthInterceptor(auth_token),
    )

    options = [
        ("grpc.max_concurrent_streams", max(1, settings.grpc.max_concurrent_streams)),
    ]
    server = grpc.aio.server(interceptors=interceptors, options=options)

    # Register services
    snapshot = await load_example_snapshot()
    service = snapshot.find_service(SERVICE_NAME)
    server.add_generic_rpc_handlers((build_generic_handler(snapshot, service, ExampleService(snapshot)),))

    # Health service
    health_svc = health.aio.HealthServicer()
    health_pb2_grpc.add_HealthServicer_to_server(health_svc, server)
    await health_svc.set("", health_pb2.HealthCheckResponse.SERVING)
    await health_svc.set(SERVICE_NAME, health_pb2.HealthCheckResponse.SERVING)

    if settings.grpc.reflection:
        reflection.enable_server_reflection((SERVICE_NAME, reflection.SERVICE_NAME), server, pool=snapshot.pool)

    # Bind address
    address = address or f"{settings.grpc.host}:{settings.grpc.port}"
    if settings.grpc.tls.enabled:
        port = server.add_secure_port(address, _server_credentials())
    else:
        port = server.add_insecure_port(address)

    return server, port
