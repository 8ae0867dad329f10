"""example.ExampleService implementation (echo semantics for every shape)."""
from __future__ import annotations

from typing import AsyncIterator

import grpc

from core.logging_config import get_logger
from infrastructure.grpc.registry import RegistrySnapshot


logger = get_logger(__name__)

SERVICE_NAME = "example.ExampleService"
STREAM_LENGTH = 5


class ExampleService:
    def __init__(self, snapshot: RegistrySnapshot) -> None:
        self._response_cls = snapshot.codec.message_class("example.Response")

    def _reply(self, message: str):
        return self._response_cls(message=message)

    async def UnaryCall(self, request, context: grpc.aio.ServicerContext):
        logger.info("example_unary", message=request.message)
        return self._reply(f"Unary Response: {request.message}")

    async def ServerStreamingCall(self, request, context: grpc.aio.ServicerContext) -> AsyncIterator:
        logger.info("example_server_stream", message=request.message)
        for i in range(STREAM_LENGTH):
            yield self._reply(f"Stream {i + 1} for: {request.message}")

    async def ClientStreamingCall(self, request_iterator, context: grpc.aio.ServicerContext):
        messages = []
        async for request in request_iterator:
            logger.debug("example_client_sent", message=request.message)
            messages.append(request.message)
        logger.info("example_client_stream", count=len(messages))
        return self._reply(f"Received: [{' '.join(messages)}]")

    async def BidirectionalStreamingCall(self, request_iterator, context: grpc.aio.ServicerContext) -> AsyncIterator:
        async for request in request_iterator:
            logger.debug("example_bidi_received", message=request.message)
            yield self._reply(f"Echo: {request.message}")
