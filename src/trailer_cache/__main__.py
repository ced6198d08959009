"""
Command line entry point: ``python -m trailer_cache``
"""
import argparse
import logging
import sys

import uvicorn

from .api import create_app
from .config import CacheConfig

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO") -> None:
    """Configure the root logger with a single console handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)


def main() -> None:
    parser = argparse.ArgumentParser(description="On-demand trailer acquisition and cache service")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--storage-dir", type=str, default=None, help="Override STORAGE_DIR")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override LOG_LEVEL",
    )
    args = parser.parse_args()

    config = CacheConfig()
    if args.storage_dir:
        config.storage_dir = args.storage_dir
    log_level = args.log_level or ("DEBUG" if config.debug else config.log_level)
    setup_logging(log_level)

    uvicorn.run(create_app(config), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
