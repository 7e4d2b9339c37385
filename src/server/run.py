#!/usr/bin/env python
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from src.server.config import config


def main() -> None:
    load_dotenv(Path.cwd() / ".env")
    log_level = config.log_level.upper()
    logger.remove()
    logger.add(sys.stderr, level=log_level)
    logger.info("LAN IoT signer, start running!")

    uvicorn.run(
        "src.server.main:app",
        host="0.0.0.0",
        port=config.port,
        log_level=log_level.lower(),
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


if __name__ == "__main__":
    main()
