"""
会话领域实体 - 一条隧道对应一个会话，一个会话至多一个调用句柄
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from domain.common.exceptions import ProtocolViolationException
from domain.proto.schema import StreamingShape


class SessionState(str, Enum):
    AWAITING_INIT = "awaiting_init"
    RESOLVING = "resolving"
    UNARY_WAIT = "unary_wait"
    SERVER_STREAMING = "server_streaming"
    CLIENT_ACCUMULATING = "client_accumulating"
    BIDI_OPEN = "bidi_open"
    CLOSING = "closing"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @classmethod
    def for_shape(cls, shape: StreamingShape) -> "SessionState":
        return _RELAY_STATE[shape]


_RANK = {
    SessionState.AWAITING_INIT: 0,
    SessionState.RESOLVING: 1,
    SessionState.UNARY_WAIT: 2,
    SessionState.SERVER_STREAMING: 2,
    SessionState.CLIENT_ACCUMULATING: 2,
    SessionState.BIDI_OPEN: 2,
    SessionState.CLOSING: 3,
    SessionState.CLOSED: 4,
}

_RELAY_STATE = {
    StreamingShape.UNARY: SessionState.UNARY_WAIT,
    StreamingShape.SERVER_STREAM: SessionState.SERVER_STREAMING,
    StreamingShape.CLIENT_STREAM: SessionState.CLIENT_ACCUMULATING,
    StreamingShape.BIDI: SessionState.BIDI_OPEN,
}


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    """会话实体

    状态只会前进（AWAITING_INIT → RESOLVING → 中继状态 → CLOSING → CLOSED）；
    调用句柄一旦挂上就不会被替换。
    """

    id: str = field(default_factory=_new_id)
    target: Optional[str] = None
    service: Optional[str] = None
    method: Optional[str] = None
    shape: Optional[StreamingShape] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    auth: Any = None
    state: SessionState = SessionState.AWAITING_INIT
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _handle: Any = field(default=None, repr=False)

    @property
    def handle(self) -> Any:
        return self._handle

    @property
    def active(self) -> bool:
        return self.state.rank < SessionState.CLOSING.rank

    @property
    def initialized(self) -> bool:
        return self.state is not SessionState.AWAITING_INIT

    def advance(self, new_state: SessionState) -> bool:
        """业务规则：状态单调前进；返回是否发生了迁移"""
        if new_state.rank <= self.state.rank:
            return False
        self.state = new_state
        return True

    def attach_call(self, handle: Any) -> None:
        """业务规则：每个会话至多一个调用句柄"""
        if self._handle is not None:
            raise ProtocolViolationException("Session already has an active call")
        if not self.active:
            raise ProtocolViolationException("Session is closed")
        self._handle = handle

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target,
            "service": self.service,
            "method": self.method,
            "shape": self.shape.value if self.shape else None,
            "state": self.state.value,
            "created_at": self.created_at.isoformat().replace("+00:00", "Z"),
        }


__all__ = ["Session", "SessionState"]
