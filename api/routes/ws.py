"""WebSocket tunnel route: one socket carries one gRPC call of any shape."""
from __future__ import annotations

from fastapi import APIRouter, WebSocket

from api.middleware.request_id import HEADER_NAME, bind_request_context, resolve_client_ip
from core.logging_config import get_logger
from infrastructure.realtime.session_manager import SessionManager
from infrastructure.realtime.websocket_tunnel import WebSocketTunnel


logger = get_logger(__name__)


router = APIRouter(prefix="/grpc/ws", tags=["WebSocket"])


def get_session_manager_from_app(ws: WebSocket) -> SessionManager:
    manager = getattr(ws.app.state, "session_manager", None)
    if manager is None:
        raise RuntimeError("Session manager not initialized. Ensure lifespan sets app.state.session_manager.")
    return manager


@router.websocket("/stream")
async def grpc_stream(ws: WebSocket) -> None:
    # RequestIDMiddleware 不处理 websocket，这里自行绑定日志上下文
    bind_request_context(
        ws.headers.get(HEADER_NAME),
        resolve_client_ip(ws.headers, ws.client.host if ws.client else None),
        path=ws.url.path,
    )
    manager = get_session_manager_from_app(ws)
    await ws.accept()
    session = await manager.accept(WebSocketTunnel(ws))
    try:
        await manager.run(session.id)
    except Exception as exc:
        logger.error("ws_error", session_id=session.id, error=str(exc), exc_info=True)
        raise
