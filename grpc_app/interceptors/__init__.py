from grpc_app.interceptors.auth import AuthInterceptor
from grpc_app.interceptors.logging import LoggingInterceptor
from grpc_app.interceptors.request_id import RequestIdInterceptor, get_request_id

__all__ = ["AuthInterceptor", "LoggingInterceptor", "RequestIdInterceptor", "get_request_id"]
