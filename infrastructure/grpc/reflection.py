"""Load descriptors from a target's server reflection service."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import grpc
from google.protobuf import descriptor_pb2
from grpc_reflection.v1alpha import reflection_pb2, reflection_pb2_grpc

from core.logging_config import get_logger
from domain.common.exceptions import ProtoParseException
from infrastructure.grpc.invoker import DynamicInvoker, build_metadata, classify_rpc_error


logger = get_logger(__name__)

_REFLECTION_SERVICES = frozenset({
    "grpc.reflection.v1alpha.ServerReflection",
    "grpc.reflection.v1.ServerReflection",
})


class _ReflectionSession:
    """One ServerReflectionInfo stream; requests are answered in order."""

    def __init__(self, call: Any) -> None:
        self._call = call

    async def ask(self, **kwargs: Any) -> reflection_pb2.ServerReflectionResponse:
        await self._call.write(reflection_pb2.ServerReflectionRequest(**kwargs))
        response = await self._call.read()
        if response is grpc.aio.EOF:
            raise ProtoParseException("Reflection stream closed by the target")
        if response.HasField("error_response"):
            err = response.error_response
            raise ProtoParseException(f"Reflection error {err.error_code}: {err.error_message}")
        return response


def _add_files(
    files: Dict[str, descriptor_pb2.FileDescriptorProto],
    response: reflection_pb2.ServerReflectionResponse,
) -> None:
    for raw in response.file_descriptor_response.file_descriptor_proto:
        fdp = descriptor_pb2.FileDescriptorProto.FromString(raw)
        files.setdefault(fdp.name, fdp)


class ReflectionLoader:
    def __init__(self, invoker: DynamicInvoker) -> None:
        self._invoker = invoker

    async def fetch(
        self,
        target: str,
        metadata: Optional[Mapping[str, str]] = None,
        auth: Any = None,
    ) -> descriptor_pb2.FileDescriptorSet:
        channel = await self._invoker.connect(target)
        stub = reflection_pb2_grpc.ServerReflectionStub(channel)
        call = stub.ServerReflectionInfo(metadata=build_metadata(metadata, auth))
        session = _ReflectionSession(call)
        files: Dict[str, descriptor_pb2.FileDescriptorProto] = {}
        unavailable: set[str] = set()
        try:
            listing = await session.ask(list_services="")
            services = [
                s.name for s in listing.list_services_response.service
                if s.name not in _REFLECTION_SERVICES
            ]
            for name in services:
                try:
                    _add_files(files, await session.ask(file_containing_symbol=name))
                except ProtoParseException as exc:
                    logger.warning("reflection_symbol_unavailable", target=target, service=name, error=exc.message)

            # Servers may omit dependencies they think the client already has
            missing = self._missing(files, unavailable)
            while missing:
                for filename in missing:
                    try:
                        _add_files(files, await session.ask(file_by_filename=filename))
                    except ProtoParseException:
                        # left for the registry to resolve from the bundled well-known types
                        unavailable.add(filename)
                missing = self._missing(files, unavailable)
            await call.done_writing()
        except grpc.aio.AioRpcError as exc:
            raise classify_rpc_error(exc) from exc
        finally:
            call.cancel()
            await channel.close(grace=None)

        descriptor_set = descriptor_pb2.FileDescriptorSet()
        descriptor_set.file.extend(files.values())
        if not descriptor_set.file:
            raise ProtoParseException(f"Target {target} exposes no services via reflection")
        logger.info("reflection_loaded", target=target, services=services, files=len(descriptor_set.file))
        return descriptor_set

    @staticmethod
    def _missing(files: Mapping[str, descriptor_pb2.FileDescriptorProto], unavailable: set[str]) -> list[str]:
        wanted = {dep for f in files.values() for dep in f.dependency}
        return sorted(wanted - set(files) - unavailable)


__all__ = ["ReflectionLoader"]
