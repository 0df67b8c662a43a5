"""Command-line entrypoint running the proxy and admin servers in one event loop."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog
import uvicorn

from ..common.settings import MigrationProxySettings
from .app import create_admin_app, create_app

LOGGER = structlog.get_logger("stratus.migration_proxy.main")


async def serve(settings: Optional[MigrationProxySettings] = None) -> None:
    settings = settings or MigrationProxySettings()
    app = create_app(settings)
    admin_app = create_admin_app(app.state.proxy_state)

    servers = [
        uvicorn.Server(
            uvicorn.Config(
                app,
                host=settings.proxy_host,
                port=settings.proxy_port,
                log_config=None,
                log_level=settings.log_level.lower(),
                lifespan="on",
            )
        ),
        uvicorn.Server(
            uvicorn.Config(
                admin_app,
                host=settings.admin_host,
                port=settings.admin_port,
                log_config=None,
                log_level=settings.log_level.lower(),
                lifespan="off",
            )
        ),
    ]
    LOGGER.info(
        "Starting migration proxy",
        proxy=f"{settings.proxy_host}:{settings.proxy_port}",
        admin=f"{settings.admin_host}:{settings.admin_port}",
    )
    tasks = [asyncio.create_task(server.serve()) for server in servers]
    await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    # One server stopping (signal or bind failure) takes the other down with it.
    for server in servers:
        server.should_exit = True
    await asyncio.gather(*tasks)


def main() -> None:
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
