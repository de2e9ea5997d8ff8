#!/usr/bin/env python3
"""Run the concierge automation service with uvicorn.

Usage:
    python scripts/run.py              # Serve on port 3000
    python scripts/run.py --port 8080  # Custom port
"""

import argparse
import sys

import structlog

from concierge.app import configure_logging
from concierge.config import settings

logger = structlog.get_logger()


def run_http(host: str, port: int) -> None:
    import uvicorn

    logger.info("starting_concierge", host=host, port=port, env=settings.env)

    uvicorn.run(
        "concierge.app:api",
        host=host,
        port=port,
        reload=(settings.env == "development"),
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the concierge automation service")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=3000, help="Port to listen on")
    args = parser.parse_args()

    configure_logging()
    run_http(args.host, args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
