#!/usr/bin/env python3
"""
GGE Tracker Fill Service - Main Entry Point

Runs one fill pass for the configured game server: fetches every ranking
from the empire API, reconciles it with the stored snapshot and appends the
history series to Supabase. Meant to be started on a schedule, one process
per server.
"""

import asyncio
import logging
import os
import sys
import threading
from pathlib import Path

# Load .env from backend directory before Config() is used
from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from config import Config
from refresh.orchestrator import PassOrchestrator
from utils.logger import setup_logging

logger = logging.getLogger(__name__)


def start_forced_exit_guard(timeout_seconds: float) -> threading.Timer:
    """
    Terminate the process after ``timeout_seconds`` whatever it is doing.

    Writes already committed stay; in-flight ones are lost and the next
    scheduled pass catches up.
    """
    def _exit():
        logger.error("Fill pass exceeded its time limit, exiting", extra={
            "timeout_seconds": timeout_seconds
        })
        logging.shutdown()
        os._exit(1)

    timer = threading.Timer(timeout_seconds, _exit)
    timer.daemon = True
    timer.start()
    return timer


async def main() -> int:
    """Main entry point."""
    config = Config()
    setup_logging(config)

    guard = start_forced_exit_guard(config.pass_timeout_seconds)
    logger.info("Starting GGE Tracker fill service", extra={
        "version": "1.0.0",
        "environment": config.environment,
        "server": config.server_name,
        "api_base_url": config.api_base_url
    })

    try:
        result = await PassOrchestrator(config).run()
    except Exception as e:
        logger.error("Fill service crashed", extra={"error": str(e)}, exc_info=True)
        return 1
    finally:
        guard.cancel()

    return 1 if result.critical_errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
