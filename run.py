#!/usr/bin/env python3
"""
Bank Cards Ledger Entry Point

Starts the FastAPI server and the daily card expiration scheduler.
"""

import sys
from datetime import time

import uvicorn

from card_ledger.api import create_app
from card_ledger.config import get_config
from card_ledger.expiration import ExpirationScheduler
from card_ledger.logging_config import setup_logging
from card_ledger.system import CardLedgerSystem


def main() -> int:
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    system = CardLedgerSystem(config)
    scheduler = ExpirationScheduler(
        system.expiration_sweep, run_at=time.fromisoformat(config.expiration_run_at)
    )
    scheduler.start()

    logger.info(f"API available at http://{config.api_host}:{config.api_port}")
    try:
        uvicorn.run(create_app(system), host=config.api_host, port=config.api_port, log_level="info")
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        scheduler.stop()
        system.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
