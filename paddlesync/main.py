from __future__ import annotations

import os

import uvicorn

from paddlesync.config_manager import ConfigManager
from paddlesync.logging_config import setup_logging


def main() -> None:
    host = os.getenv("PADDLESYNC_HOST", "0.0.0.0")
    port = int(os.getenv("PADDLESYNC_PORT", "8080"))
    config = ConfigManager(os.getenv("PADDLESYNC_CONFIG_PATH", "config.yaml")).load()
    setup_logging(os.getenv("LOG_LEVEL") or config.logging.level)
    uvicorn.run("paddlesync.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
