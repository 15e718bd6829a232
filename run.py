#!/usr/bin/env python3
"""
Banka Wallet Entry Point

Starts the FastAPI server with the wallet core.
"""

import sys

import uvicorn

from wallet_core.config import get_config
from wallet_core.logging_config import setup_logging


def run_server(host: str, port: int, workers: int = 1, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "wallet_core.api:create_app",
        factory=True,
        host=host,
        port=port,
        workers=workers,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_file=config.log_file)
    logger.info(f"Starting Banka wallet API on {config.api_host}:{config.api_port}")

    try:
        run_server(config.api_host, config.api_port, workers=config.api_workers)
    except KeyboardInterrupt:
        logger.info("Shutting down Banka wallet API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
