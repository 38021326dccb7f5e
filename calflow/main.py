from __future__ import annotations

import logging
import os

import uvicorn
from dotenv import load_dotenv

from calflow.config_manager import ConfigManager


def main() -> None:
    load_dotenv()
    config = ConfigManager(os.getenv("CALFLOW_CONFIG_PATH", "config.yaml")).load()
    logging.basicConfig(
        level=config.server.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "calflow.web_app:create_app",
        factory=True,
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
