"""领域层业务异常定义，供领域、应用与基础设施使用。

核心（core）层仅负责 HTTP 映射；会话桥接层把同一组异常渲染成隧道里的
`error` 帧。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class ProtoParseException(BusinessException):
    """A definition could not be compiled or its types could not be resolved."""

    def __init__(self, message: str, *, details: dict | None = None, field: str | None = None):
        super().__init__(
            code=BusinessCode.PROTO_PARSE_ERROR,
            message=message,
            error_type="ParseError",
            details=details,
            field=field,
        )


class DescriptorNotLoadedException(BusinessException):
    def __init__(self):
        super().__init__(
            code=BusinessCode.DESCRIPTOR_NOT_LOADED,
            message="No descriptor loaded",
            error_type="DescriptorNotLoaded",
        )


class MethodNotFoundException(BusinessException):
    def __init__(self, service: str, method: str):
        super().__init__(
            code=BusinessCode.METHOD_NOT_FOUND,
            message=f"Method not found: {service}/{method}",
            error_type="NotFound",
            details={"service": service, "method": method},
        )


class SchemaMismatchException(BusinessException):
    """JSON payload does not fit the message schema.

    ``field`` carries the offending path, e.g. ``items[2].price``.
    """

    def __init__(self, message: str, *, field: str | None = None):
        text = f"{field}: {message}" if field else message
        super().__init__(
            code=BusinessCode.SCHEMA_MISMATCH,
            message=text,
            error_type="SchemaMismatch",
            field=field,
        )


class ProtocolViolationException(BusinessException):
    def __init__(self, message: str):
        super().__init__(
            code=BusinessCode.PROTOCOL_VIOLATION,
            message=message,
            error_type="ProtocolViolation",
        )


class ConnectException(BusinessException):
    """Target unreachable or the transport handshake failed."""

    def __init__(self, target: str, reason: str):
        super().__init__(
            code=BusinessCode.TARGET_UNREACHABLE,
            message=f"Failed to dial target {target}: {reason}",
            error_type="ConnectError",
            details={"target": target},
        )


class AuthRejectedException(BusinessException):
    def __init__(self, status: str, message: str):
        super().__init__(
            code=BusinessCode.AUTH_REJECTED,
            message=f"{status}: {message}",
            error_type="AuthRejected",
            details={"status": status},
        )


class UpstreamStatusException(BusinessException):
    """The target finished the call with a non-OK gRPC status."""

    def __init__(self, status: str, message: str):
        self.status = status
        super().__init__(
            code=BusinessCode.UPSTREAM_STATUS_ERROR,
            message=f"{status}: {message}",
            error_type="UpstreamStatusError",
            details={"status": status},
        )
