"""Foreground server process: wires the app state and runs uvicorn until shutdown."""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import structlog
import uvicorn

from encore.server.api import create_api_app
from encore.server.state import AppState

if TYPE_CHECKING:
    from encore.config import AppConfig

log = structlog.get_logger(__name__)


async def serve(config: AppConfig, *, scheduler: bool = True) -> None:
    """Run the API server until SIGINT/SIGTERM or an RPC ``shutdown``."""
    state = await AppState.create(config)
    await state.start(scheduler=scheduler)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, state.request_shutdown)

    server = uvicorn.Server(
        uvicorn.Config(
            create_api_app(state),
            host=config.server.host,
            port=config.server.port,
            log_level=config.server.log_level,
            loop="asyncio",
            log_config=None,
        )
    )
    server_task = asyncio.create_task(server.serve())
    log.info("server_started", host=config.server.host, port=config.server.port)

    stop_task = asyncio.create_task(state.shutdown_event.wait())
    await asyncio.wait({server_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    log.info("initiating graceful shutdown")
    server.should_exit = True
    await server_task
    stop_task.cancel()
    await state.close()
    log.info("server shut down cleanly")
