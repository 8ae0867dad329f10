"""
Tunnel port and frame contracts.

A tunnel is one bidirectional text channel (a WebSocket in production,
an in-memory pair in tests). The session bridge only depends on this
protocol; frames are JSON text except the literal end sentinel.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from domain.common.exceptions import BusinessException, ProtocolViolationException


END_SENTINEL = "__END__"

# Keys an init frame may carry; a later object made only of these is a second init
INIT_KEYS = frozenset({"type", "target", "service", "method", "mode", "metadata", "auth"})
_INIT_REQUIRED = frozenset({"target", "service", "method"})


class TunnelClosed(Exception):
    """Raised by a tunnel once the peer has gone away."""

    def __init__(self, code: int | None = None, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(reason or f"tunnel closed ({code})")


class Tunnel(Protocol):
    async def receive_text(self) -> str: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class FrameKind(str, Enum):
    INIT = "init"
    DATA = "data"
    END = "end"


@dataclass(frozen=True)
class InboundFrame:
    kind: FrameKind
    payload: Any = None


def looks_like_init(value: Any) -> bool:
    # Classified by key set alone. A data message that uses only init keys and
    # has target, service and method is taken for a second init and rejected;
    # such a request needs at least one key outside INIT_KEYS to pass as data.
    if not isinstance(value, dict):
        return False
    keys = set(value)
    if value.get("type") not in (None, "init"):
        return False
    return _INIT_REQUIRED <= keys and keys <= INIT_KEYS


def parse_inbound(text: str) -> InboundFrame:
    """Classify one inbound text frame.

    ``__END__`` (or the legacy ``{"end": true}``) ends the send side; any
    other frame must be JSON.
    """
    if text.strip() == END_SENTINEL:
        return InboundFrame(FrameKind.END)
    try:
        value = json.loads(text)
    except ValueError as exc:
        raise ProtocolViolationException(f"Invalid JSON frame: {exc}") from exc
    if isinstance(value, dict) and value == {"end": True}:
        return InboundFrame(FrameKind.END)
    if looks_like_init(value):
        return InboundFrame(FrameKind.INIT, value)
    return InboundFrame(FrameKind.DATA, value)


def data_frame(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


def system_frame(content: str) -> str:
    return json.dumps({"type": "system", "content": content}, ensure_ascii=False)


def error_frame(exc: BusinessException) -> str:
    body: dict[str, Any] = {
        "type": "error",
        "content": exc.message,
        "code": int(exc.code),
        "error_type": exc.error_type,
    }
    if exc.field:
        body["field"] = exc.field
    return json.dumps(body, ensure_ascii=False)


__all__ = [
    "END_SENTINEL",
    "INIT_KEYS",
    "FrameKind",
    "InboundFrame",
    "Tunnel",
    "TunnelClosed",
    "data_frame",
    "error_frame",
    "looks_like_init",
    "parse_inbound",
    "system_frame",
]
