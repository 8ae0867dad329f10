from __future__ import annotations

import contextvars
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import grpc

from grpc_app.interceptors.base import WrappingInterceptor


REQUEST_ID_META_KEY = "x-request-id"
_request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("grpc_request_id", default=None)


def get_request_id() -> str | None:
    return _request_id_var.get()


class RequestIdInterceptor(WrappingInterceptor):
    @asynccontextmanager
    async def around(self, details: grpc.HandlerCallDetails, context: grpc.aio.ServicerContext) -> AsyncIterator[None]:
        # Try to get request-id from incoming metadata
        md = dict(details.invocation_metadata or [])
        request_id = md.get(REQUEST_ID_META_KEY) or str(uuid.uuid4())

        # Attach as trailing metadata so the client can correlate
        context.set_trailing_metadata(((REQUEST_ID_META_KEY, request_id),))
        token = _request_id_var.set(request_id)
        try:
            yield
        finally:
            _request_id_var.reset(token)
