"""Build grpc.aio method handlers from runtime descriptors.

The servicer is any object exposing one coroutine / async generator per
method name; request and response classes come from the snapshot's codec.
"""
from __future__ import annotations

from typing import Any

import grpc

from domain.proto.schema import ServiceDescriptor, StreamingShape
from infrastructure.grpc.registry import RegistrySnapshot


_FACTORIES = {
    StreamingShape.UNARY: grpc.unary_unary_rpc_method_handler,
    StreamingShape.SERVER_STREAM: grpc.unary_stream_rpc_method_handler,
    StreamingShape.CLIENT_STREAM: grpc.stream_unary_rpc_method_handler,
    StreamingShape.BIDI: grpc.stream_stream_rpc_method_handler,
}


def build_generic_handler(
    snapshot: RegistrySnapshot,
    service: ServiceDescriptor,
    servicer: Any,
) -> grpc.GenericRpcHandler:
    codec = snapshot.codec
    handlers = {}
    for method in service.methods:
        behavior = getattr(servicer, method.name, None)
        if behavior is None:
            continue
        request_cls = codec.message_class(method.input_type)
        handlers[method.name] = _FACTORIES[method.shape](
            behavior,
            request_deserializer=request_cls.FromString,
            response_serializer=lambda msg: msg.SerializeToString(),
        )
    return grpc.method_handlers_generic_handler(service.name, handlers)


__all__ = ["build_generic_handler"]
