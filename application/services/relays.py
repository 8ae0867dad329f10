"""Per-shape frame relays.

Each relay runs two concurrent parts for one session: an inbound pump
(tunnel frames -> call send side) and ``drive`` (call results -> tunnel).
They share only the call handle and the bridge; whatever ``drive``
raises is terminal for the session.
"""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from application.ports.tunnel import FrameKind, data_frame, parse_inbound, system_frame
from core.logging_config import get_logger
from domain.common.exceptions import (
    AuthRejectedException,
    ProtocolViolationException,
    SchemaMismatchException,
    UpstreamStatusException,
)
from domain.proto.schema import StreamingShape

if TYPE_CHECKING:
    from application.services.session_bridge import SessionBridge


logger = get_logger(__name__)

STREAM_COMPLETED = "stream completed"


class FrameRelay:
    shape: StreamingShape

    def __init__(self, bridge: "SessionBridge", handle: Any) -> None:
        self._bridge = bridge
        self._handle = handle

    async def run(self) -> None:
        pump = asyncio.create_task(self._pump(), name=f"pump-{self._bridge.session.id}")
        try:
            await self.drive()
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def drive(self) -> None:
        raise NotImplementedError

    async def _pump(self) -> None:
        while True:
            try:
                frame = parse_inbound(await self._bridge.next_text())
            except ProtocolViolationException as exc:
                await self.on_invalid(exc)
                continue
            if frame.kind is FrameKind.INIT:
                await self._bridge.emit_error(
                    ProtocolViolationException("Session already initialized; init frame ignored")
                )
            elif frame.kind is FrameKind.END:
                await self.on_end()
            else:
                await self.on_data(frame.payload)

    async def on_invalid(self, exc: ProtocolViolationException) -> None:
        await self._bridge.emit_error(exc)

    async def on_data(self, payload: Any) -> None:
        raise NotImplementedError

    async def on_end(self) -> None:
        raise NotImplementedError


class _SingleRequestRelay(FrameRelay):
    """Unary and server-stream: the first data frame is the only request."""

    def __init__(self, bridge: "SessionBridge", handle: Any) -> None:
        super().__init__(bridge, handle)
        self._request: asyncio.Future = asyncio.get_running_loop().create_future()

    async def on_invalid(self, exc: ProtocolViolationException) -> None:
        if not self._request.done():
            self._request.set_exception(exc)
            return
        await super().on_invalid(exc)

    async def on_data(self, payload: Any) -> None:
        if self._request.done():
            await self._bridge.emit_error(
                ProtocolViolationException(f"{self.shape.value} call accepts a single request message")
            )
            return
        self._request.set_result(payload)

    async def on_end(self) -> None:
        await self._bridge.emit_error(
            ProtocolViolationException(f"{self._bridge.end_sentinel} is only valid for client or bidi streams")
        )


class UnaryRelay(_SingleRequestRelay):
    shape = StreamingShape.UNARY

    async def drive(self) -> None:
        request = await self._request
        response = await self._handle.invoke(request)
        await self._bridge.emit(data_frame(response))


class ServerStreamRelay(_SingleRequestRelay):
    shape = StreamingShape.SERVER_STREAM

    async def drive(self) -> None:
        request = await self._request
        self._handle.start(request)
        count = 0
        async for response in self._handle.responses():
            count += 1
            await self._bridge.emit(data_frame(response))
        logger.info("stream_completed", responses=count)
        await self._bridge.emit(system_frame(STREAM_COMPLETED))


class _RequestStreamRelay(FrameRelay):
    """Client-stream and bidi: every data frame is forwarded until END."""

    def __init__(self, bridge: "SessionBridge", handle: Any) -> None:
        super().__init__(bridge, handle)
        self._send_closed = asyncio.Event()
        self._upstream_failed = False
        self._sent = 0

    async def on_data(self, payload: Any) -> None:
        if self._send_closed.is_set():
            await self._bridge.emit_error(
                ProtocolViolationException(f"Send side already closed by {self._bridge.end_sentinel}")
            )
            return
        if self._upstream_failed:
            logger.debug("frame_dropped_after_upstream_failure")
            return
        try:
            await self._handle.send(payload)
        except (SchemaMismatchException, ProtocolViolationException) as exc:
            await self._bridge.emit_error(exc)
        except (AuthRejectedException, UpstreamStatusException) as exc:
            # The call is already over; drive() reports the status
            self._upstream_failed = True
            logger.debug("send_failed", error=exc.message)
        else:
            self._sent += 1

    async def on_end(self) -> None:
        if self._send_closed.is_set():
            await self._bridge.emit_error(
                ProtocolViolationException(f"Send side already closed by {self._bridge.end_sentinel}")
            )
            return
        self._send_closed.set()
        logger.info("send_closed", messages=self._sent)
        if self._upstream_failed:
            return
        try:
            await self._handle.close_send()
        except (AuthRejectedException, UpstreamStatusException) as exc:
            self._upstream_failed = True
            logger.debug("close_send_failed", error=exc.message)


class ClientStreamRelay(_RequestStreamRelay):
    shape = StreamingShape.CLIENT_STREAM

    async def drive(self) -> None:
        response = await self._handle.result()
        await self._bridge.emit(data_frame(response))


class BidiRelay(_RequestStreamRelay):
    shape = StreamingShape.BIDI

    async def drive(self) -> None:
        count = 0
        async for response in self._handle.responses():
            count += 1
            await self._bridge.emit(data_frame(response))
        # Responses are exhausted; the session stays open until the send side is closed too
        await self._send_closed.wait()
        logger.info("stream_completed", responses=count, messages=self._sent)
        await self._bridge.emit(system_frame(STREAM_COMPLETED))


RELAYS = {
    StreamingShape.UNARY: UnaryRelay,
    StreamingShape.SERVER_STREAM: ServerStreamRelay,
    StreamingShape.CLIENT_STREAM: ClientStreamRelay,
    StreamingShape.BIDI: BidiRelay,
}


__all__ = [
    "FrameRelay",
    "UnaryRelay",
    "ServerStreamRelay",
    "ClientStreamRelay",
    "BidiRelay",
    "RELAYS",
    "STREAM_COMPLETED",
]
