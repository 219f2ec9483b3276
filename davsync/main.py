from __future__ import annotations

import logging
import os

import uvicorn

from davsync.config_manager import ConfigManager
from davsync.models import LoggingConfig


def configure_logging(config: LoggingConfig) -> None:
    logging.basicConfig(level=getattr(logging, config.level, logging.INFO), format=config.format)


def main() -> None:
    config = ConfigManager(os.getenv("DAVSYNC_CONFIG_PATH", "config.yaml")).load()
    configure_logging(config.logging)
    host = os.getenv("DAVSYNC_HOST", "127.0.0.1")
    port = int(os.getenv("DAVSYNC_PORT", "8080"))
    uvicorn.run("davsync.web_admin:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
