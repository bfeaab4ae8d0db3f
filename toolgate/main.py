from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List, Optional

import uvicorn

from toolgate.config import get_settings
from toolgate.server import create_app
from toolgate.utils import configure_logging

logger = logging.getLogger("toolgate")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="toolgate tool server gateway")
    parser.add_argument("--host", default=None, help="Bind address (default: settings host)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: settings port)")
    parser.add_argument("--config", default=None, help="Path to the servers YAML file")
    return parser.parse_args(argv)


async def main_async(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    settings = get_settings()
    if args.config:
        settings = settings.model_copy(update={"servers_config_path": args.config})

    configure_logging(settings.log_level)
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info(f"Starting toolgate on {host}:{port} (servers: {settings.servers_config_file})")

    app = create_app(settings)
    config = uvicorn.Config(app, host=host, port=port, log_level=settings.log_level.lower())
    server = uvicorn.Server(config)
    await server.serve()


def main() -> None:
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    main()
