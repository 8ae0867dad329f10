"""Dynamic gRPC client.

Opens a ``grpc.aio`` channel to an arbitrary target and drives a call
of any streaming shape using raw-bytes (de)serializers; request and
response bodies go through the snapshot's :class:`JsonCodec`.
"""
from __future__ import annotations

import asyncio
import base64
from typing import Any, AsyncIterator, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import grpc

from core.logging_config import get_logger
from domain.common.exceptions import (
    AuthRejectedException,
    BusinessException,
    ConnectException,
    ProtocolViolationException,
    UpstreamStatusException,
)
from domain.proto.schema import MethodDescriptor, StreamingShape
from infrastructure.grpc.codec import JsonCodec


logger = get_logger(__name__)

Metadata = Sequence[tuple[str, str]]

_AUTH_STATUSES = {grpc.StatusCode.UNAUTHENTICATED, grpc.StatusCode.PERMISSION_DENIED}


def classify_status(code: Optional[grpc.StatusCode], details: Optional[str]) -> BusinessException:
    name = code.name if code is not None else "UNKNOWN"
    details = details or ""
    if code in _AUTH_STATUSES:
        return AuthRejectedException(name, details)
    return UpstreamStatusException(name, details)


def classify_rpc_error(exc: grpc.aio.AioRpcError) -> BusinessException:
    return classify_status(exc.code(), exc.details())


def auth_metadata(auth: Any) -> Optional[tuple[str, str]]:
    """Map an auth descriptor (none/bearer/basic) to an `authorization` header."""
    if auth is None:
        return None
    kind = (getattr(auth, "type", "") or "").lower()
    if kind == "bearer":
        return ("authorization", f"Bearer {auth.token}")
    if kind == "basic":
        creds = base64.b64encode(f"{auth.username}:{auth.password}".encode("utf-8")).decode("ascii")
        return ("authorization", f"Basic {creds}")
    return None


def build_metadata(metadata: Optional[Mapping[str, str]], auth: Any) -> tuple[tuple[str, str], ...]:
    # gRPC rejects upper-case metadata keys
    pairs = [(str(k).lower(), str(v)) for k, v in (metadata or {}).items()]
    header = auth_metadata(auth)
    if header is not None:
        pairs = [p for p in pairs if p[0] != "authorization"]
        pairs.append(header)
    return tuple(pairs)


def parse_target(raw: str) -> tuple[str, bool]:
    """Return ``(host:port, use_tls)`` for host:port or URL style targets."""
    target = raw.strip()
    if "://" in target:
        parts = urlsplit(target)
        secure = parts.scheme in ("https", "grpcs")
        host = parts.netloc
        if parts.port is None:
            host = f"{host}:{443 if secure else 80}"
        return host, secure
    return target, target.endswith(":443")


class CallHandle:
    """Live call of one streaming shape. Always released with :meth:`aclose`."""

    shape: StreamingShape

    def __init__(
        self,
        channel: grpc.aio.Channel,
        method: MethodDescriptor,
        codec: JsonCodec,
        metadata: Metadata,
        timeout: Optional[float],
    ) -> None:
        self._channel = channel
        self._method = method
        self._codec = codec
        self._metadata = tuple(metadata)
        self._timeout = timeout
        self._call: Any = None
        self._closed = False

    @property
    def method(self) -> MethodDescriptor:
        return self._method

    @property
    def closed(self) -> bool:
        return self._closed

    def _encode(self, request: Any) -> bytes:
        return self._codec.encode(self._method.input_type, request)

    def _decode(self, data: bytes) -> dict:
        return self._codec.decode(self._method.output_type, data)

    def cancel(self) -> None:
        if self._call is not None and not self._call.done():
            self._call.cancel()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.cancel()
        await self._channel.close(grace=None)
        logger.debug("call_released", path=self._method.path)


class UnaryCallHandle(CallHandle):
    shape = StreamingShape.UNARY

    async def invoke(self, request: Any) -> dict:
        payload = self._encode(request)
        multicallable = self._channel.unary_unary(self._method.path)
        self._call = multicallable(payload, metadata=self._metadata, timeout=self._timeout)
        try:
            return self._decode(await self._call)
        except grpc.aio.AioRpcError as exc:
            raise classify_rpc_error(exc) from exc


class ServerStreamCallHandle(CallHandle):
    shape = StreamingShape.SERVER_STREAM

    def start(self, request: Any) -> None:
        if self._call is not None:
            raise ProtocolViolationException("Server stream already started")
        payload = self._encode(request)
        multicallable = self._channel.unary_stream(self._method.path)
        self._call = multicallable(payload, metadata=self._metadata, timeout=self._timeout)

    async def responses(self) -> AsyncIterator[dict]:
        try:
            async for data in self._call:
                yield self._decode(data)
        except grpc.aio.AioRpcError as exc:
            raise classify_rpc_error(exc) from exc


class _RequestStreamMixin:
    """Send side shared by client-stream and bidi handles."""

    _call: Any

    async def send(self, request: Any) -> None:
        payload = self._encode(request)  # type: ignore[attr-defined]
        try:
            await self._call.write(payload)
        except grpc.aio.AioRpcError as exc:
            raise classify_rpc_error(exc) from exc
        except asyncio.InvalidStateError as exc:
            if self._call.done():
                code = await self._call.code()
                if code is not grpc.StatusCode.OK:
                    raise classify_status(code, await self._call.details()) from exc
            raise ProtocolViolationException(f"Cannot send: {exc}") from exc

    async def close_send(self) -> None:
        try:
            await self._call.done_writing()
        except grpc.aio.AioRpcError as exc:
            raise classify_rpc_error(exc) from exc


class ClientStreamCallHandle(_RequestStreamMixin, CallHandle):
    shape = StreamingShape.CLIENT_STREAM

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        multicallable = self._channel.stream_unary(self._method.path)
        self._call = multicallable(metadata=self._metadata, timeout=self._timeout)

    async def result(self) -> dict:
        try:
            return self._decode(await self._call)
        except grpc.aio.AioRpcError as exc:
            raise classify_rpc_error(exc) from exc


class BidiCallHandle(_RequestStreamMixin, CallHandle):
    shape = StreamingShape.BIDI

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        multicallable = self._channel.stream_stream(self._method.path)
        self._call = multicallable(metadata=self._metadata, timeout=self._timeout)

    async def responses(self) -> AsyncIterator[dict]:
        try:
            while True:
                data = await self._call.read()
                if data is grpc.aio.EOF:
                    return
                yield self._decode(data)
        except grpc.aio.AioRpcError as exc:
            raise classify_rpc_error(exc) from exc


_HANDLES = {
    StreamingShape.UNARY: UnaryCallHandle,
    StreamingShape.SERVER_STREAM: ServerStreamCallHandle,
    StreamingShape.CLIENT_STREAM: ClientStreamCallHandle,
    StreamingShape.BIDI: BidiCallHandle,
}


class DynamicInvoker:
    def __init__(
        self,
        *,
        connect_timeout_s: float = 10.0,
        call_timeout_s: Optional[float] = None,
        max_send_message_bytes: int = 4 * 1024 * 1024,
        max_receive_message_bytes: int = 4 * 1024 * 1024,
    ) -> None:
        self._connect_timeout_s = connect_timeout_s
        self._call_timeout_s = call_timeout_s
        self._options = [
            ("grpc.max_send_message_length", max_send_message_bytes),
            ("grpc.max_receive_message_length", max_receive_message_bytes),
        ]

    def _channel(self, target: str) -> grpc.aio.Channel:
        address, secure = parse_target(target)
        if secure:
            return grpc.aio.secure_channel(address, grpc.ssl_channel_credentials(), options=self._options)
        return grpc.aio.insecure_channel(address, options=self._options)

    async def connect(self, target: str) -> grpc.aio.Channel:
        """Open a channel and wait until it is ready, or raise ConnectException."""
        if not target or not target.strip():
            raise ConnectException(target, "empty target")
        try:
            channel = self._channel(target)
        except ValueError as exc:
            raise ConnectException(target, str(exc)) from exc
        try:
            await asyncio.wait_for(channel.channel_ready(), timeout=self._connect_timeout_s)
        except asyncio.TimeoutError:
            state = channel.get_state(try_to_connect=False)
            await channel.close(grace=None)
            raise ConnectException(
                target, f"not ready after {self._connect_timeout_s:g}s (state={state.name})"
            ) from None
        except BaseException:
            await channel.close(grace=None)
            raise
        return channel

    async def open(
        self,
        target: str,
        method: MethodDescriptor,
        codec: JsonCodec,
        metadata: Optional[Mapping[str, str]] = None,
        auth: Any = None,
    ) -> CallHandle:
        channel = await self.connect(target)
        handle_cls = _HANDLES[method.shape]
        try:
            handle = handle_cls(channel, method, codec, build_metadata(metadata, auth), self._call_timeout_s)
        except BaseException:
            await channel.close(grace=None)
            raise
        logger.info("call_opened", target=target, path=method.path, shape=method.shape.value)
        return handle


__all__ = [
    "CallHandle",
    "UnaryCallHandle",
    "ServerStreamCallHandle",
    "ClientStreamCallHandle",
    "BidiCallHandle",
    "DynamicInvoker",
    "build_metadata",
    "classify_rpc_error",
    "classify_status",
    "parse_target",
]
