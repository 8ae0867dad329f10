"""Session bridge: one tunnel <-> one dynamically invoked gRPC call.

Per session there is a reader task (tunnel -> inbound queue) and a driver
task (init -> resolve -> per-shape relay). A tunnel closed by the peer
aborts the session synchronously: the state jumps to CLOSED, the call is
cancelled and nothing is emitted afterwards.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional, Union

from pydantic import ValidationError

from application.dtos.tunnel import InitFrame, describe_validation_error
from application.ports.tunnel import (
    END_SENTINEL,
    FrameKind,
    Tunnel,
    TunnelClosed,
    error_frame,
    parse_inbound,
    system_frame,
)
from application.services.relays import RELAYS
from core.logging_config import bind_session, get_logger
from domain.common.exceptions import BusinessException, ProtocolViolationException
from domain.proto.schema import MethodDescriptor, StreamingShape
from domain.session.entity import Session, SessionState
from infrastructure.grpc.invoker import DynamicInvoker
from infrastructure.grpc.registry import ProtoRegistry, RegistrySnapshot
from shared.codes import BusinessCode


logger = get_logger(__name__)


class SessionBridge:
    end_sentinel = END_SENTINEL

    def __init__(
        self,
        session: Session,
        tunnel: Tunnel,
        *,
        registry: ProtoRegistry,
        invoker: DynamicInvoker,
        inbound_queue_max: int = 1000,
    ) -> None:
        self.session = session
        self._tunnel = tunnel
        self._registry = registry
        self._invoker = invoker
        self._inbound: asyncio.Queue[Union[str, ProtocolViolationException]] = asyncio.Queue(maxsize=max(1, inbound_queue_max))
        self._send_lock = asyncio.Lock()
        self._reader: Optional[asyncio.Task] = None
        self._driver: Optional[asyncio.Task] = None
        self._peer_closed = False

    # ------------------------------------------------------------ lifecycle
    async def run(self) -> None:
        """Serve the tunnel until the call is over or the tunnel goes away."""
        bind_session(self.session.id)
        logger.info("session_opened")
        self._reader = asyncio.create_task(self._read_loop(), name=f"reader-{self.session.id}")
        self._driver = asyncio.create_task(self._drive(), name=f"driver-{self.session.id}")
        try:
            await asyncio.wait({self._driver})
        finally:
            await self._release()

    def abort(self, reason: str = "tunnel_closed") -> None:
        """Cancel immediately; no frame is emitted after this returns."""
        state_before = self.session.state
        was_active = self.session.active
        self.session.advance(SessionState.CLOSED)
        handle = self.session.handle
        if handle is not None:
            handle.cancel()
        if self._driver is not None and not self._driver.done():
            self._driver.cancel()
        if was_active:
            logger.info("call_cancelled", reason=reason, state_before=state_before.value)

    async def _release(self) -> None:
        if self._driver is not None and not self._driver.done():
            self._driver.cancel()
            await asyncio.gather(self._driver, return_exceptions=True)
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        handle = self.session.handle
        if handle is not None:
            await handle.aclose()
        self.session.advance(SessionState.CLOSED)
        if not self._peer_closed:
            try:
                await self._tunnel.close()
            except TunnelClosed:
                pass
        logger.info("session_closed")

    # ------------------------------------------------------------- inbound
    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    item: Union[str, ProtocolViolationException] = await self._tunnel.receive_text()
                except ProtocolViolationException as exc:
                    item = exc
                await self._inbound.put(item)
        except TunnelClosed as exc:
            self._peer_closed = True
            logger.info("tunnel_closed_by_peer", code=exc.code)
            self.abort()

    async def next_text(self) -> str:
        """Next inbound frame; an undecodable one is raised as ProtocolViolation."""
        item = await self._inbound.get()
        if isinstance(item, ProtocolViolationException):
            raise item
        return item

    # ------------------------------------------------------------ outbound
    async def emit(self, text: str) -> None:
        async with self._send_lock:
            if not self.session.active:
                logger.debug("frame_dropped", state=self.session.state.value)
                return
            try:
                await self._tunnel.send_text(text)
            except TunnelClosed:
                self._peer_closed = True
                self.abort("send_failed")

    async def emit_error(self, exc: BusinessException) -> None:
        logger.info("session_error_frame", error_type=exc.error_type, message=exc.message)
        await self.emit(error_frame(exc))

    # -------------------------------------------------------------- driver
    async def _drive(self) -> None:
        try:
            init = await self._await_init()
            snapshot = self._registry.snapshot()
            method = self._resolve(init, snapshot)
            handle = await self._open(init, method, snapshot)
            await self.emit(system_frame(f"connected to {init.target} ({method.path}, {method.shape.value})"))
            self.session.advance(SessionState.for_shape(method.shape))
            await RELAYS[method.shape](self, handle).run()
        except BusinessException as exc:
            logger.warning("session_failed", error_type=exc.error_type, message=exc.message)
            await self.emit_error(exc)
        except Exception as exc:
            logger.error("session_crashed", error=str(exc), exc_info=True)
            await self.emit_error(BusinessException(
                code=BusinessCode.SYSTEM_ERROR,
                message="Internal error",
                error_type="SystemError",
            ))
        finally:
            self.session.advance(SessionState.CLOSING)

    async def _await_init(self) -> InitFrame:
        try:
            frame = parse_inbound(await self.next_text())
        except ProtocolViolationException as exc:
            raise ProtocolViolationException(f"First frame must be an init frame: {exc.message}") from exc
        if frame.kind is FrameKind.END or not isinstance(frame.payload, dict):
            raise ProtocolViolationException("First frame must be an init frame")
        try:
            return InitFrame.model_validate(frame.payload)
        except ValidationError as exc:
            raise ProtocolViolationException(f"Invalid init frame: {describe_validation_error(exc)}") from exc

    def _resolve(self, init: InitFrame, snapshot: RegistrySnapshot) -> MethodDescriptor:
        session = self.session
        session.advance(SessionState.RESOLVING)
        session.target = init.target
        session.service = init.service
        session.method = init.method
        session.metadata = dict(init.metadata)
        session.auth = init.auth

        method = snapshot.lookup(init.service, init.method)
        session.shape = method.shape
        bind_session(session.id, path=method.path)
        if init.mode and _hint_shape(init.mode) is not method.shape:
            logger.warning("mode_hint_ignored", mode=init.mode, shape=method.shape.value)
        return method

    async def _open(self, init: InitFrame, method: MethodDescriptor, snapshot: RegistrySnapshot) -> Any:
        handle = await self._invoker.open(init.target, method, snapshot.codec, init.metadata, init.auth)
        try:
            self.session.attach_call(handle)
        except BusinessException:
            await handle.aclose()
            raise
        return handle


def _hint_shape(mode: str) -> Optional[StreamingShape]:
    try:
        return StreamingShape(mode.strip().lower().replace("-", "_"))
    except ValueError:
        return None


__all__ = ["SessionBridge"]
