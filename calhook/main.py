from __future__ import annotations

import os

import uvicorn

from calhook.config_manager import ConfigManager
from calhook.logging_config import configure_logging


def main() -> None:
    config_manager = ConfigManager(os.getenv("CALHOOK_CONFIG_PATH", "config.yaml"))
    configure_logging(config_manager.load().logging.level)
    host = os.getenv("CALHOOK_HOST", "0.0.0.0")
    port = int(os.getenv("CALHOOK_PORT", "8080"))
    uvicorn.run("calhook.web_app:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
