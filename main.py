#!/usr/bin/env python3
"""
============================================================================
Canteen Order Engine v1.0.0
Server Launcher
============================================================================

Starts the FastAPI application under uvicorn with process-wide logging.

ENVIRONMENT:
    CANTEEN_HOST (default 0.0.0.0), CANTEEN_PORT (default 8000),
    LOG_LEVEL (default INFO); engine settings are read by
    services.canteen_config

USAGE:
    python main.py

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
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger("canteen")


def main() -> None:
    host = os.getenv("CANTEEN_HOST", "0.0.0.0")
    port = int(os.getenv("CANTEEN_PORT", "8000"))

    logger.info(f"[LAUNCHER] Starting Canteen Order Engine | host={host} | port={port}")
    uvicorn.run("app.main:app", host=host, port=port, log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    main()
