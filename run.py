#!/usr/bin/env python3
"""
Lending Core Entry Point

Starts the FastAPI server with settings from LENDING_* environment variables.
"""

import sys

import uvicorn

from lending_core.config import get_config
from lending_core.logging_config import setup_logging


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "lending_core.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    settings = get_config()
    logger = setup_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file
    )
    logger.info(f"Starting Lending Core on {settings.api_host}:{settings.api_port} "
                f"with storage {settings.database_url.split('://')[0]}")

    try:
        run_server(host=settings.api_host, port=settings.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down Lending Core")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
