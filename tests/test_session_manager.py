import asyncio
from functools import partial

import pytest

from application.services.session_bridge import SessionBridge
from domain.session.entity import Session, SessionState
from domain.common.exceptions import ProtocolViolationException
from infrastructure.realtime.session_manager import SessionManager


@pytest.fixture
def manager(registry, invoker):
    return SessionManager(partial(SessionBridge, registry=registry, invoker=invoker))


class _Tunnel:
    """Tunnel whose client never sends anything."""

    def __init__(self) -> None:
        self.closed = asyncio.Event()
        self.sent = []

    async def receive_text(self) -> str:
        await asyncio.Event().wait()
        return ""

    async def send_text(self, text: str) -> None:
        self.sent.append(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed.set()


@pytest.mark.asyncio
async def test_accept_run_and_close(manager):
    tunnel = _Tunnel()
    session = await manager.accept(tunnel)
    task = asyncio.create_task(manager.run(session.id))
    await asyncio.sleep(0)

    assert len(manager) == 1
    assert manager.get(session.id) is session
    summary = manager.active_sessions()[0]
    assert summary["id"] == session.id
    assert summary["state"] == "awaiting_init"

    assert manager.close(session.id) is True
    assert session.state is SessionState.CLOSED
    await asyncio.wait_for(task, 5)

    assert tunnel.closed.is_set()
    assert tunnel.sent == []
    assert len(manager) == 0
    assert manager.close(session.id) is False


@pytest.mark.asyncio
async def test_shutdown_closes_every_session(manager):
    tunnels = [_Tunnel() for _ in range(3)]
    tasks = []
    for tunnel in tunnels:
        session = await manager.accept(tunnel)
        tasks.append(asyncio.create_task(manager.run(session.id)))
    await asyncio.sleep(0)

    await asyncio.wait_for(manager.shutdown(), 5)

    assert all(t.done() for t in tasks)
    assert all(t.closed.is_set() for t in tunnels)
    assert len(manager) == 0
    with pytest.raises(RuntimeError):
        await manager.accept(_Tunnel())


@pytest.mark.asyncio
async def test_run_unknown_session(manager):
    with pytest.raises(KeyError):
        await manager.run("missing")


def test_session_state_is_monotonic():
    session = Session()

    assert session.advance(SessionState.RESOLVING)
    assert session.advance(SessionState.SERVER_STREAMING)
    assert not session.advance(SessionState.RESOLVING)
    assert not session.advance(SessionState.UNARY_WAIT)
    assert session.advance(SessionState.CLOSED)
    assert not session.advance(SessionState.CLOSING)
    assert session.state is SessionState.CLOSED


def test_session_accepts_one_call_handle():
    session = Session()
    session.attach_call(object())

    with pytest.raises(ProtocolViolationException):
        session.attach_call(object())


def test_closed_session_refuses_call_handle():
    session = Session()
    session.advance(SessionState.CLOSED)

    with pytest.raises(ProtocolViolationException):
        session.attach_call(object())
