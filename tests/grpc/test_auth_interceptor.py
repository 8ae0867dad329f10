import inspect
from contextlib import asynccontextmanager

import grpc
import pytest

from grpc_app.interceptors.auth import AuthInterceptor
from grpc_app.interceptors.base import rejecting_handler, wrap_handler


class _Details(grpc.HandlerCallDetails):
    def __init__(self, method, metadata=()):
        self.method = method
        self.invocation_metadata = tuple(metadata)


class _Aborted(Exception):
    pass


class _Context:
    def __init__(self):
        self.status = None

    async def abort(self, code, details):
        self.status = (code, details)
        raise _Aborted()


def _bidi_handler(calls):
    async def _chat(request_iterator, context):
        calls.append("servicer")
        async for request in request_iterator:
            yield request

    return grpc.stream_stream_rpc_method_handler(_chat)


async def _intercept(interceptor, details, handler):
    async def continuation(_):
        return handler

    return await interceptor.intercept_service(continuation, details)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "metadata, code",
    [
        ((), grpc.StatusCode.UNAUTHENTICATED),
        ((("authorization", "Bearer nope"),), grpc.StatusCode.PERMISSION_DENIED),
    ],
)
async def test_stream_call_rejected_before_servicer_runs(metadata, code):
    calls = []
    handler = await _intercept(
        AuthInterceptor(token="tok"), _Details("/example.ExampleService/Chat", metadata), _bidi_handler(calls)
    )
    context = _Context()

    assert handler.stream_stream is not None
    with pytest.raises(_Aborted):
        await handler.stream_stream(iter(()), context)

    assert context.status[0] is code
    assert calls == []


@pytest.mark.asyncio
async def test_valid_token_and_anonymous_methods_pass_through():
    original = _bidi_handler([])
    interceptor = AuthInterceptor(token="tok")

    ok = await _intercept(interceptor, _Details("/example.ExampleService/Chat", [("authorization", "Bearer tok")]), original)
    health = await _intercept(interceptor, _Details("/grpc.health.v1.Health/Watch"), original)
    disabled = await _intercept(AuthInterceptor(token=""), _Details("/example.ExampleService/Chat"), original)

    assert ok is original
    assert health is original
    assert disabled is original


def test_wrapping_keeps_generator_and_coroutine_behaviors_apart():
    @asynccontextmanager
    async def around(context):
        yield

    streaming = _bidi_handler([])
    rejected = rejecting_handler(streaming, grpc.StatusCode.PERMISSION_DENIED, "no")

    assert inspect.isasyncgenfunction(wrap_handler(streaming, around).stream_stream)
    assert not inspect.isasyncgenfunction(wrap_handler(rejected, around).stream_stream)
    assert inspect.iscoroutinefunction(wrap_handler(rejected, around).stream_stream)
