"""Run the bundled example gRPC server (a target for the session bridge)."""
import asyncio
import signal

from core.config import settings
from core.logging_config import configure_logging, get_logger
from grpc_app.server import create_server


logger = get_logger(__name__)


def _install_stop_signals(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            logger.debug("signal_handler_unsupported", signal=sig.name)


async def serve() -> None:
    if not settings.grpc.enabled:
        logger.warning("grpc_disabled", message="gRPC disabled by config (GRPC__ENABLED=false)")
        return

    server, port = await create_server()
    address = f"{settings.grpc.host}:{port}"
    stop = asyncio.Event()
    _install_stop_signals(stop)

    await server.start()
    logger.info(
        "grpc_started",
        address=address,
        reflection=settings.grpc.reflection,
        tls=settings.grpc.tls.enabled,
        auth_required=bool(settings.grpc.auth_token),
    )
    termination = asyncio.create_task(server.wait_for_termination())
    stopping = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({termination, stopping}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopping.cancel()
        logger.info("grpc_stopping", grace_s=settings.grpc.shutdown_grace_s)
        await server.stop(grace=settings.grpc.shutdown_grace_s)
        await termination
        logger.info("grpc_stopped")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(serve())
