#!/usr/bin/env python3
"""
============================================================================
ChangeWLD Exchange
Server Launcher
============================================================================

Loads .env, configures logging and serves the FastAPI app with uvicorn.

USAGE:
    python main.py

ENVIRONMENT:
    PORT, LOG_LEVEL and every key read by services/exchange_config.py

============================================================================
"""

import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("changewld")

from app.main import create_app  # noqa: E402
from services.exchange_config import ConfigurationError, get_exchange_config  # noqa: E402


def main() -> int:
    try:
        config = get_exchange_config()
    except ConfigurationError as e:
        logger.critical(f"[STARTUP] {e}")
        return 1

    app = create_app(config)
    uvicorn.run(app, host="0.0.0.0", port=config.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
