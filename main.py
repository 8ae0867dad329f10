"""
FastAPI应用主入口
"""
from functools import partial

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import protos as proto_routes
from api.routes import ws as ws_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.services.proto_service import ProtoService
from application.services.session_bridge import SessionBridge
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from infrastructure.grpc.compiler import ProtoCompiler
from infrastructure.grpc.invoker import DynamicInvoker
from infrastructure.grpc.reflection import ReflectionLoader
from infrastructure.grpc.registry import ProtoRegistry
from infrastructure.realtime.session_manager import SessionManager


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


def build_invoker() -> DynamicInvoker:
    client = settings.grpc_client
    return DynamicInvoker(
        connect_timeout_s=client.connect_timeout_s,
        call_timeout_s=client.call_timeout_s,
        max_send_message_bytes=client.max_send_message_bytes,
        max_receive_message_bytes=client.max_receive_message_bytes,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    registry = ProtoRegistry(preserve_field_names=settings.grpc_client.preserve_field_names)
    invoker = build_invoker()
    proto_service = ProtoService(
        registry=registry,
        compiler=ProtoCompiler(
            include_paths=settings.proto.include_paths,
            timeout_s=settings.proto.compile_timeout_s,
        ),
        reflection=ReflectionLoader(invoker),
        upload_dir=settings.proto.upload_dir,
        max_upload_bytes=settings.proto.max_upload_bytes,
        cleanup_delay_s=settings.proto.cleanup_delay_s,
    )
    sessions = SessionManager(partial(
        SessionBridge,
        registry=registry,
        invoker=invoker,
        inbound_queue_max=settings.tunnel.inbound_queue_max,
    ))
    app.state.proto_registry = registry
    app.state.proto_service = proto_service
    app.state.session_manager = sessions
    logger.info(
        "application_started",
        upload_dir=settings.proto.upload_dir,
        connect_timeout_s=settings.grpc_client.connect_timeout_s,
    )

    yield

    # 关闭时：先取消所有隧道会话，再清理上传目录
    await sessions.shutdown()
    await proto_service.aclose()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="通用 gRPC 会话桥：WebSocket 隧道 ↔ 动态 gRPC 调用",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. Request ID中间件（最先执行，为后续中间件提供request_id）
app.add_middleware(RequestIDMiddleware)

# 2. 日志中间件（依赖request_id）
app.add_middleware(LoggingMiddleware)

# 3. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)


# 注册路由
app.include_router(proto_routes.router, prefix="/api")
app.include_router(ws_routes.router)


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
