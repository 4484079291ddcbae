#!/usr/bin/env python
"""Main entry point for the Quillnote MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from quillnote import __version__
from quillnote.config import config
from quillnote.models.db_models import init_db
from quillnote.observability import configure_logging, metrics
from quillnote.server.mcp_server import QuillnoteMcpServer

TRANSPORTS = ["stdio", "sse", "streamable-http"]


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Quillnote MCP Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("QUILLNOTE_DATABASE_PATH")
    )
    parser.add_argument(
        "--storage-dir",
        help="Directory for locally stored media",
        type=str,
        default=os.environ.get("QUILLNOTE_STORAGE_DIR")
    )
    parser.add_argument(
        "--in-memory",
        help="Use an in-memory database (nothing is kept after exit)",
        action="store_true",
    )
    parser.add_argument(
        "--transport",
        help="MCP transport; the shared-note HTTP routes need sse or streamable-http",
        choices=TRANSPORTS,
        default=os.environ.get("QUILLNOTE_TRANSPORT", "stdio")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("QUILLNOTE_LOG_LEVEL", "INFO")
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.storage_dir:
        config.storage_dir = Path(args.storage_dir)
    if args.in_memory:
        config.in_memory_db = True


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def main(argv=None):
    """Run the Quillnote MCP server."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except Exception as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    if not config.user_id:
        logger.warning("QUILLNOTE_USER_ID is not set; note tools will refuse to run")

    # Single engine shared by all repositories
    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        logger.info(f"Starting Quillnote MCP server ({args.transport})")
        server = QuillnoteMcpServer(engine=engine)
        server.run(transport=args.transport)
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
