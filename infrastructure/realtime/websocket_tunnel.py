"""Starlette WebSocket as a :class:`Tunnel`."""
from __future__ import annotations

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from application.ports.tunnel import TunnelClosed
from domain.common.exceptions import ProtocolViolationException


class WebSocketTunnel:
    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws

    async def receive_text(self) -> str:
        """Next frame as text; binary frames must be UTF-8."""
        try:
            message = await self._ws.receive()
        except RuntimeError as exc:
            # Starlette raises once the disconnect message was already consumed
            raise TunnelClosed(reason=str(exc)) from exc
        if message["type"] == "websocket.disconnect":
            raise TunnelClosed(message.get("code"), message.get("reason") or "")
        text = message.get("text")
        if text is None:
            data = message.get("bytes") or b""
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProtocolViolationException(f"Binary frame is not valid UTF-8: {exc.reason}") from exc
        return text

    async def send_text(self, text: str) -> None:
        if self._ws.application_state is not WebSocketState.CONNECTED:
            raise TunnelClosed(reason="websocket not connected")
        try:
            await self._ws.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise TunnelClosed(getattr(exc, "code", None), str(exc)) from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._ws.application_state is WebSocketState.DISCONNECTED:
            return
        try:
            await self._ws.close(code=code, reason=reason or None)
        except RuntimeError as exc:
            raise TunnelClosed(code, str(exc)) from exc


__all__ = ["WebSocketTunnel"]
