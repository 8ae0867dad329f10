"""
Structlog 日志配置

structlog 与标准库 logging（uvicorn、grpc）共用同一条处理链，
通过 structlog.contextvars 绑定的 request_id / session_id 会出现在每一行。
隧道会话会把 metadata、auth 写进日志上下文，渲染前统一脱敏。
"""
import json
import logging
from typing import Any, List, MutableMapping

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars
from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer, TimeStamper, add_log_level
from structlog.stdlib import ProcessorFormatter

from core.config import settings


SECRET_KEYS = frozenset({"authorization", "auth", "token", "password", "access_token"})
MASK = "***"
# grpc 的 cython 层在 DEBUG 下非常啰嗦
QUIET_LOGGERS = ("grpc", "grpc._cython", "multipart")


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: MASK if str(k).lower() in SECRET_KEYS else _mask(v) for k, v in value.items()}
    return value


def redact_secrets(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in list(event_dict):
        if key.lower() in SECRET_KEYS:
            event_dict[key] = MASK
        elif isinstance(event_dict[key], dict):
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def get_renderer() -> Any:
    if settings.DEBUG:
        return ConsoleRenderer(colors=True)

    # structlog passes default= and friends through to the serializer
    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)

    return JSONRenderer(serializer=_dumps)


def _level() -> int:
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL.upper())
    return logging.DEBUG if settings.DEBUG else logging.INFO


def configure_logging() -> None:
    """配置 structlog，并把标准库 logging 桥接到同一处理链。"""
    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[*shared_pre_chain, ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(ProcessorFormatter(
        foreign_pre_chain=shared_pre_chain,
        processors=[ProcessorFormatter.remove_processors_meta, get_renderer()],
    ))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_level())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_session(session_id: str, **values: Any) -> None:
    """Bind a tunnel session id (and extras) to the current task's log context."""
    bind_contextvars(session_id=session_id, **values)
