"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional


class GrpcTlsSettings(BaseModel):
    enabled: bool = False
    cert: Optional[str] = None
    key: Optional[str] = None
    ca: Optional[str] = None


class GrpcSettings(BaseModel):
    """Bundled example target server (grpc_main.py)."""
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 50051
    # This maps to GRPC option grpc.max_concurrent_streams
    max_concurrent_streams: int = 100
    # Expected `authorization` metadata value; empty disables the check
    auth_token: str = ""
    reflection: bool = True
    # Seconds in-flight RPCs get to finish on SIGTERM/SIGINT
    shutdown_grace_s: float = 5.0
    tls: GrpcTlsSettings = Field(default_factory=GrpcTlsSettings)


class GrpcClientSettings(BaseModel):
    """Outbound calls made by the session bridge."""
    connect_timeout_s: float = 10.0
    # None means no per-call deadline (long-lived streams)
    call_timeout_s: Optional[float] = None
    max_send_message_bytes: int = 4 * 1024 * 1024
    max_receive_message_bytes: int = 4 * 1024 * 1024
    # Emit proto field names instead of lowerCamelCase JSON names
    preserve_field_names: bool = False


class ProtoSettings(BaseModel):
    upload_dir: str = "./uploaded_protos"
    include_paths: list[str] = Field(default_factory=list)
    max_upload_bytes: int = 5 * 1024 * 1024  # 5MB
    compile_timeout_s: float = 30.0
    # 上传目录保留时长（秒），0 表示编译后立即清理
    cleanup_delay_s: float = 600.0


class TunnelSettings(BaseModel):
    inbound_queue_max: int = 1000


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="gRPC Bridge")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="development")
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8081)

    # CORS配置
    CORS_ORIGINS: list = Field(default=["*"])

    # 分组配置：采用嵌套模型，环境变量形如 GRPC_CLIENT__CONNECT_TIMEOUT_S
    grpc_client: GrpcClientSettings = Field(default_factory=GrpcClientSettings)
    proto: ProtoSettings = Field(default_factory=ProtoSettings)
    tunnel: TunnelSettings = Field(default_factory=TunnelSettings)
    grpc: GrpcSettings = Field(default_factory=GrpcSettings)

    # 日志/请求体记录配置
    # None: DEBUG 时为 DEBUG，否则 INFO
    LOG_LEVEL: Optional[str] = Field(default=None)
    LOG_REQUEST_BODY_ENABLE_BY_DEFAULT: bool = Field(default=True)
    LOG_REQUEST_BODY_MAX_BYTES: int = Field(default=2048)
    LOG_REQUEST_BODY_ALLOW_MULTIPART: bool = Field(default=False)

    # pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                import json
                try:
                    arr = json.loads(s)
                    if isinstance(arr, list):
                        return arr
                except ValueError:
                    pass
            if "," in s:
                return [item.strip() for item in s.split(",") if item.strip()]
            return [s]
        return v


settings = Settings()
