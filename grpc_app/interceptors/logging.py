from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import grpc

from core.logging_config import get_logger
from grpc_app.interceptors.base import WrappingInterceptor
from grpc_app.interceptors.request_id import get_request_id


logger = get_logger(__name__)


class LoggingInterceptor(WrappingInterceptor):
    @asynccontextmanager
    async def around(self, details: grpc.HandlerCallDetails, context: grpc.aio.ServicerContext) -> AsyncIterator[None]:
        method = details.method
        start = time.perf_counter()
        logger.info("grpc_request", method=method, peer=context.peer(), request_id=get_request_id())
        try:
            yield
        except grpc.aio.AbortError:
            # status already chosen by the handler or a later interceptor
            raise
        except Exception as exc:
            logger.error(
                "grpc_unhandled_error",
                method=method,
                error=str(exc),
                exc_info=True,
                request_id=get_request_id(),
            )
            raise
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.info("grpc_request_done", method=method, elapsed_ms=round(elapsed_ms, 2), request_id=get_request_id())
