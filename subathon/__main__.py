"""
subathon.__main__ — Entry point for ``python -m subathon``
==========================================================

Wiring:
1. Load .env (secrets — ``JWT_SECRET``).
2. Load config.yaml (infrastructure settings).
3. Configure logging at the configured level.
4. Serve the FastAPI app with uvicorn (blocking).

Per-tenant accumulators are created lazily by the API on first access
and flushed to disk when the server shuts down.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from subathon.config import load_config

logger = logging.getLogger("subathon")


def main() -> None:
    """Bootstrap and run the Subathon API."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Infrastructure configuration.
    try:
        cfg = load_config()
    except FileNotFoundError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.critical("%s", exc)
        sys.exit(1)

    # 3. Logging.
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Config loaded — data dir: %s", cfg.data_dir)

    # 4. Serve (blocks until Ctrl+C or SIGTERM).
    from subathon.api.main import app

    uvicorn.run(app, host=cfg.api_host, port=cfg.api_port, log_config=None)


if __name__ == "__main__":
    main()
