"""
API依赖项 - 从 app.state 取出生命周期内创建的单例
"""
from fastapi import Request

from application.services.proto_service import ProtoService
from infrastructure.realtime.session_manager import SessionManager


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} not initialized. Ensure lifespan sets app.state.{name}.")
    return value


async def get_proto_service(request: Request) -> ProtoService:
    return _state(request, "proto_service")


async def get_session_manager(request: Request) -> SessionManager:
    return _state(request, "session_manager")
