"""In-process tunnel session manager.

Keeps track of open tunnel sessions (one bridge per tunnel) so they can
be listed, closed individually or all at once on application shutdown.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from application.ports.tunnel import Tunnel
from application.services.session_bridge import SessionBridge
from core.logging_config import get_logger
from domain.session.entity import Session


logger = get_logger(__name__)

BridgeFactory = Callable[[Session, Tunnel], SessionBridge]


class SessionManager:
    """Manage per-process tunnel sessions."""

    def __init__(self, bridge_factory: BridgeFactory) -> None:
        self._bridge_factory = bridge_factory
        # session_id -> bridge
        self._bridges: Dict[str, SessionBridge] = {}
        # session_id -> task running the bridge
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def accept(self, tunnel: Tunnel) -> Session:
        session = Session()
        bridge = self._bridge_factory(session, tunnel)
        async with self._lock:
            if self._closed:
                raise RuntimeError("Session manager is shut down")
            self._bridges[session.id] = bridge
        logger.info("session_accepted", session_id=session.id, active=len(self._bridges))
        return session

    async def run(self, session_id: str) -> None:
        """Serve the session until it ends; always unregisters it."""
        bridge = self._bridges.get(session_id)
        if bridge is None:
            raise KeyError(session_id)
        task = asyncio.current_task()
        if task is not None:
            self._tasks[session_id] = task
        try:
            await bridge.run()
        finally:
            async with self._lock:
                self._bridges.pop(session_id, None)
                self._tasks.pop(session_id, None)
            logger.info("session_released", session_id=session_id, active=len(self._bridges))

    def close(self, session_id: str, reason: str = "closed_by_server") -> bool:
        """Cancel the session's call synchronously; the bridge then closes the tunnel."""
        bridge = self._bridges.get(session_id)
        if bridge is None:
            return False
        bridge.abort(reason)
        return True

    async def shutdown(self) -> None:
        async with self._lock:
            self._closed = True
            ids = list(self._bridges)
            tasks = list(self._tasks.values())
        for session_id in ids:
            self.close(session_id, reason="shutdown")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("session_manager_shutdown", closed=len(ids))

    def get(self, session_id: str) -> Optional[Session]:
        bridge = self._bridges.get(session_id)
        return bridge.session if bridge is not None else None

    def active_sessions(self) -> List[Dict[str, Any]]:
        return [bridge.session.to_summary() for bridge in list(self._bridges.values())]

    def __len__(self) -> int:
        return len(self._bridges)


__all__ = ["SessionManager", "BridgeFactory"]
