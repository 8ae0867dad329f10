"""
全局异常处理器：业务异常 → 统一错误响应 + HTTP 状态码
"""
import traceback
import uuid
from typing import Mapping, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as http_status

from .response import Response, business_error_response, error_response
from shared.codes import BusinessCode
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException


logger = get_logger(__name__)

# 业务码 → HTTP 状态码，未列出的按 400 处理
HTTP_STATUS_BY_CODE: Mapping[BusinessCode, int] = {
    BusinessCode.PARAM_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.METHOD_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.UPSTREAM_STATUS_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    # 目标服务拒绝了我们转发的凭据，不是调用方对本服务的认证失败
    BusinessCode.AUTH_REJECTED: http_status.HTTP_502_BAD_GATEWAY,
    BusinessCode.TARGET_UNREACHABLE: http_status.HTTP_502_BAD_GATEWAY,
    BusinessCode.UNAUTHORIZED: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    BusinessCode.TOO_MANY_REQUESTS: http_status.HTTP_429_TOO_MANY_REQUESTS,
}

# HTTPException 状态码 → 业务码
CODE_BY_HTTP_STATUS: Mapping[int, BusinessCode] = {
    400: BusinessCode.PARAM_ERROR,
    401: BusinessCode.UNAUTHORIZED,
    403: BusinessCode.FORBIDDEN,
    404: BusinessCode.NOT_FOUND,
    413: BusinessCode.PARAM_ERROR,
    429: BusinessCode.TOO_MANY_REQUESTS,
    500: BusinessCode.SYSTEM_ERROR,
    503: BusinessCode.SERVICE_UNAVAILABLE,
}


def business_code_to_http_status(code: int) -> int:
    try:
        return HTTP_STATUS_BY_CODE.get(BusinessCode(code), http_status.HTTP_400_BAD_REQUEST)
    except ValueError:
        return http_status.HTTP_400_BAD_REQUEST


def _request_id(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", None) or str(uuid.uuid4())


def _json(body: Response, status_code: int, headers: Optional[Mapping[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


def register_exception_handlers(app: FastAPI):
    """
    注册全局异常处理器

    Args:
        app: FastAPI应用实例
    """

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        status_code = business_code_to_http_status(exc.code)
        if status_code >= 500:
            logger.warning("business_error", error_type=exc.error_type, message=exc.message, status=status_code)
        return _json(business_error_response(exc, _request_id(request)), status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """参数校验失败：只取第一个错误作为 message，全部错误放在 details"""
        errors = exc.errors()
        first = errors[0] if errors else {}
        body = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": errors},
            field=".".join(str(loc) for loc in first.get("loc", [])[1:]),
            request_id=_request_id(request),
        )
        return _json(body, http_status.HTTP_422_UNPROCESSABLE_ENTITY)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        body = error_response(
            code=CODE_BY_HTTP_STATUS.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return _json(body, exc.status_code, getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """处理所有未捕获的异常；DEBUG 下附带 traceback"""
        request_id = _request_id(request)
        logger.error("unhandled_exception", request_id=request_id, error=str(exc), exc_info=True)
        details = {"exception": str(exc), "traceback": traceback.format_exc()} if app.debug else None
        body = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        return _json(body, http_status.HTTP_500_INTERNAL_SERVER_ERROR)
