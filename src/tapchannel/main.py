"""Application entry point for the channel hub server."""

from __future__ import annotations

import logging
import os

import uvicorn

from tapchannel.config.settings import AppConfig


def configure_logging(config: AppConfig) -> None:
    """Configure the root logger from ``config.logging``."""
    logging.basicConfig(
        level=config.logging.level.upper(),
        format=config.logging.format,
        force=True,
    )


def main() -> None:
    """Start the channel hub server."""
    config = AppConfig()
    configure_logging(config)
    reload = os.getenv("TAPCHANNEL_RELOAD", "false").lower() in ("1", "true", "yes")
    uvicorn.run(
        "tapchannel.api.app:create_app",
        factory=True,
        host=config.server.host,
        port=config.server.port,
        reload=reload,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
