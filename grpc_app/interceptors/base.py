from __future__ import annotations

import inspect
from typing import Any, AsyncContextManager, Awaitable, Callable

import grpc


Around = Callable[[grpc.aio.ServicerContext], AsyncContextManager[Any]]


def _streaming(behavior: Callable[..., Any], around: Around) -> Callable[..., Any]:
    """Wrap a streaming-response behavior, keeping its kind.

    grpc.aio picks how to drive a handler from whether it is an async
    generator function, so a coroutine behavior (writes through
    ``context.write`` or aborts outright) must stay a coroutine.
    """
    if inspect.isasyncgenfunction(behavior):
        async def _generator(request, context: grpc.aio.ServicerContext):
            async with around(context):
                async for response in behavior(request, context):
                    yield response

        return _generator

    async def _coroutine(request, context: grpc.aio.ServicerContext):
        async with around(context):
            return await behavior(request, context)

    return _coroutine


def wrap_handler(handler: grpc.RpcMethodHandler, around: Around) -> grpc.RpcMethodHandler:
    """Run every call of ``handler`` inside ``around(context)``.

    Covers the four call types:
    unary-unary: 单请求 → 单响应
    unary-stream: 单请求 → 流式响应（服务端流）
    stream-unary: 流式请求 → 单响应（客户端流）
    stream-stream: 流式请求 → 流式响应（双向流）
    Streaming behaviors may be async generators or coroutines that write
    through ``context.write``; each keeps its kind.
    """
    if handler.unary_unary:
        async def _unary_unary(request, context: grpc.aio.ServicerContext):
            async with around(context):
                return await handler.unary_unary(request, context)

        return grpc.unary_unary_rpc_method_handler(
            _unary_unary,
            request_deserializer=handler.request_deserializer,
            response_serializer=handler.response_serializer,
        )

    if handler.unary_stream:
        return grpc.unary_stream_rpc_method_handler(
            _streaming(handler.unary_stream, around),
            request_deserializer=handler.request_deserializer,
            response_serializer=handler.response_serializer,
        )

    if handler.stream_unary:
        async def _stream_unary(request_iterator, context: grpc.aio.ServicerContext):
            async with around(context):
                return await handler.stream_unary(request_iterator, context)

        return grpc.stream_unary_rpc_method_handler(
            _stream_unary,
            request_deserializer=handler.request_deserializer,
            response_serializer=handler.response_serializer,
        )

    if handler.stream_stream:
        return grpc.stream_stream_rpc_method_handler(
            _streaming(handler.stream_stream, around),
            request_deserializer=handler.request_deserializer,
            response_serializer=handler.response_serializer,
        )

    return handler


def rejecting_handler(handler: grpc.RpcMethodHandler, code: grpc.StatusCode, details: str) -> grpc.RpcMethodHandler:
    """Same call type as ``handler`` but aborts before any request is read.

    Plain coroutines even for the streaming types, so the status goes out
    without an async generator being torn down mid-stream.
    """
    async def _abort(_request, context: grpc.aio.ServicerContext):
        await context.abort(code, details)

    kwargs = dict(
        request_deserializer=handler.request_deserializer,
        response_serializer=handler.response_serializer,
    )
    if handler.unary_unary:
        return grpc.unary_unary_rpc_method_handler(_abort, **kwargs)
    if handler.unary_stream:
        return grpc.unary_stream_rpc_method_handler(_abort, **kwargs)
    if handler.stream_unary:
        return grpc.stream_unary_rpc_method_handler(_abort, **kwargs)
    return grpc.stream_stream_rpc_method_handler(_abort, **kwargs)


class WrappingInterceptor(grpc.aio.ServerInterceptor):
    """Base for interceptors that only need a context around each call."""

    def around(self, details: grpc.HandlerCallDetails, context: grpc.aio.ServicerContext) -> AsyncContextManager[Any]:
        raise NotImplementedError

    def applies_to(self, method: str) -> bool:
        return True

    async def intercept_service(
        self,
        continuation: Callable[[grpc.HandlerCallDetails], Awaitable[grpc.RpcMethodHandler]],
        handler_call_details: grpc.HandlerCallDetails,
    ) -> grpc.RpcMethodHandler:
        handler = await continuation(handler_call_details)
        if handler is None or not self.applies_to(handler_call_details.method):
            return handler
        return wrap_handler(handler, lambda context: self.around(handler_call_details, context))
