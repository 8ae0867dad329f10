"""Proto 定义上传 / 服务列表 / 反射加载路由。"""
from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, Depends, File, UploadFile

from api.dependencies import get_proto_service, get_session_manager
from application.dtos.protos import RegisteredServicesDTO, SessionSummaryDTO
from application.dtos.tunnel import ReflectionRequest
from application.services.proto_service import ProtoService, UploadedFile
from core.response import Response as ApiResponse, success_response
from infrastructure.realtime.session_manager import SessionManager


router = APIRouter(tags=["Proto"])


@router.post(
    "/upload/proto",
    summary="上传 .proto（或 .protoset）并注册",
    response_model=ApiResponse[RegisteredServicesDTO],
)
async def upload_proto(
    proto: List[UploadFile] = File(..., description="一个或多个 .proto 文件，或单个 .protoset"),
    service: ProtoService = Depends(get_proto_service),
):
    files = [UploadedFile(filename=f.filename or "", content=await f.read()) for f in proto]
    services = await service.upload(files)
    return success_response(
        data=RegisteredServicesDTO.from_services(services),
        message="Proto uploaded and compiled successfully",
    )


@router.get(
    "/listServices",
    summary="列出已注册的服务与方法",
    response_model=Dict[str, List[str]],
)
async def list_services(service: ProtoService = Depends(get_proto_service)):
    # 与前端约定：直接返回 {service: [method, ...]}，不包统一响应
    return service.list_services()


@router.post(
    "/reflection",
    summary="通过目标服务的 Server Reflection 加载定义",
    response_model=ApiResponse[RegisteredServicesDTO],
)
async def load_from_reflection(
    payload: ReflectionRequest,
    service: ProtoService = Depends(get_proto_service),
):
    services = await service.load_from_reflection(payload.target, payload.metadata, payload.auth)
    return success_response(
        data=RegisteredServicesDTO.from_services(services),
        message="Descriptors loaded via reflection",
    )


@router.get(
    "/sessions",
    summary="当前打开的隧道会话",
    response_model=ApiResponse[List[SessionSummaryDTO]],
)
async def list_sessions(manager: SessionManager = Depends(get_session_manager)):
    return success_response(data=[SessionSummaryDTO(**s) for s in manager.active_sessions()])
