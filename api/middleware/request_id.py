"""
Request ID 中间件
生成或透传追踪ID，并绑定到 structlog 上下文；WebSocket 隧道复用同一套绑定。
"""
import uuid
from contextvars import ContextVar
from typing import Mapping, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


HEADER_NAME = "X-Request-ID"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)


def resolve_client_ip(headers: Mapping[str, str], fallback: Optional[str]) -> str:
    """X-Forwarded-For 首个地址 > X-Real-IP > 连接对端地址"""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return headers.get("x-real-ip") or fallback or "unknown"


def bind_request_context(request_id: Optional[str], client_ip: str, **values) -> str:
    """设置 contextvars 并绑定到 structlog；返回最终使用的 request_id"""
    request_id = request_id or str(uuid.uuid4())
    request_id_var.set(request_id)
    client_ip_var.set(client_ip)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, client_ip=client_ip, **values)
    return request_id


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    1. 从请求头获取或生成新的request_id
    2. 存入 request.state 与 contextvars，供日志系统使用
    3. 在响应头中返回request_id
    """

    HEADER_NAME = HEADER_NAME

    async def dispatch(self, request: Request, call_next):
        client_ip = resolve_client_ip(request.headers, request.client.host if request.client else None)
        request_id = bind_request_context(
            request.headers.get(self.HEADER_NAME),
            client_ip,
            method=request.method,
            path=request.url.path,
        )
        request.state.request_id = request_id
        request.state.client_ip = client_ip

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response


def get_request_id() -> Optional[str]:
    """获取当前请求的request_id（不在请求上下文中时为 None）"""
    return request_id_var.get()


def get_client_ip() -> Optional[str]:
    """获取当前请求的客户端IP（不在请求上下文中时为 None）"""
    return client_ip_var.get()
