"""
Business codes shared by the HTTP envelope and the tunnel `error` frames.

Ranges: 1xxxx request parameters, 201xx proto registry and tunnel
protocol, 3xxxx credentials, 4xxxx system / upstream transport,
5xxxx throttling.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    SUCCESS = 0

    # Request parameters
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    NOT_FOUND = 20006

    # Proto registry / tunnel protocol
    PROTO_PARSE_ERROR = 20100
    DESCRIPTOR_NOT_LOADED = 20101
    METHOD_NOT_FOUND = 20102
    SCHEMA_MISMATCH = 20103
    PROTOCOL_VIOLATION = 20104
    UPSTREAM_STATUS_ERROR = 20105

    # Credentials: our callers (HTTP 401/403) vs. the gRPC target refusing forwarded ones
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002
    AUTH_REJECTED = 30003

    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003
    TARGET_UNREACHABLE = 40004

    TOO_MANY_REQUESTS = 50001


__all__ = ["BusinessCode"]
