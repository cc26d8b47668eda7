import asyncio
import logging
import os
import sys
from urllib.parse import urlparse

import uvicorn

from github_connect.config import ClientSettings


def _bind() -> tuple:
    origin = urlparse(ClientSettings.from_env().origin)
    return origin.hostname or '127.0.0.1', origin.port or 8000


def _setup_logging() -> None:
    level = os.getenv('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def serve():
    host, port = _bind()
    uvicorn.run('backend.server:app', host=host, port=port)


async def _connect() -> int:
    from backend import server

    host, port = _bind()
    web = uvicorn.Server(uvicorn.Config(server.app, host=host, port=port, log_level='warning'))
    serving = asyncio.create_task(web.serve())
    while not web.started:
        if serving.done():
            return 1
        await asyncio.sleep(0.1)

    orchestrator = server.ORCHESTRATOR
    try:
        await orchestrator.initiate_connection()
        outcome = await orchestrator.wait_for_completion()
    finally:
        web.should_exit = True
        await serving

    print("\n=== GitHub Connection ===\n")
    print(f"Outcome: {outcome.value if outcome else 'none'}")
    if server.TOASTS.last:
        print(f"{server.TOASTS.last.title}: {server.TOASTS.last.description}")
    conn = orchestrator.connection
    if conn:
        print(f"User: {conn.username}")
        print(f"Repositories: {len(conn.repositories)}")
        if conn.selected_repository:
            print(f"Selected: {conn.selected_repository.full_name}")
            print(f"Clone: {orchestrator.clone_url()}")
    return 0 if conn else 1


def run():
    _setup_logging()
    command = sys.argv[1] if len(sys.argv) > 1 else 'serve'
    if command == 'serve':
        serve()
    elif command == 'connect':
        sys.exit(asyncio.run(_connect()))
    else:
        print("usage: github-connect [serve|connect]")
        sys.exit(2)


if __name__ == "__main__":
    run()
