from __future__ import annotations

import hmac
from typing import Awaitable, Callable, Optional

import grpc

from core.config import settings
from core.logging_config import get_logger
from grpc_app.interceptors.base import rejecting_handler


logger = get_logger(__name__)


def _extract_token(details: grpc.HandlerCallDetails) -> Optional[str]:
    md = dict(details.invocation_metadata or [])
    auth = md.get("authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return md.get("access_token") or None


class AuthInterceptor(grpc.aio.ServerInterceptor):
    """Static bearer token check.

    - Expects metadata `authorization: Bearer <token>` or `access_token: <token>`
    - Disabled when no token is configured
    - Health and reflection methods stay anonymous
    - Rejected calls never reach the servicer, whatever the call type
    """

    _anonymous_prefixes = (
        "/grpc.health.v1.Health/",
        "/grpc.reflection.v1alpha.ServerReflection/",
        "/grpc.reflection.v1.ServerReflection/",
    )

    def __init__(self, token: Optional[str] = None) -> None:
        self._token = settings.grpc.auth_token if token is None else token

    def applies_to(self, method: str) -> bool:
        return bool(self._token) and not method.startswith(self._anonymous_prefixes)

    async def intercept_service(
        self,
        continuation: Callable[[grpc.HandlerCallDetails], Awaitable[grpc.RpcMethodHandler]],
        handler_call_details: grpc.HandlerCallDetails,
    ) -> grpc.RpcMethodHandler:
        handler = await continuation(handler_call_details)
        method = handler_call_details.method
        if handler is None or not self.applies_to(method):
            return handler

        token = _extract_token(handler_call_details)
        if not token:
            logger.info("grpc_auth_missing", method=method)
            return rejecting_handler(handler, grpc.StatusCode.UNAUTHENTICATED, "未提供认证凭据")
        if not hmac.compare_digest(token.encode("utf-8"), self._token.encode("utf-8")):
            logger.info("grpc_auth_rejected", method=method)
            return rejecting_handler(handler, grpc.StatusCode.PERMISSION_DENIED, "无效的认证凭据")
        return handler
