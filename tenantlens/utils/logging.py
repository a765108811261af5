"""Logging setup shared by the CLI and the API app."""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging to stdout and quiet the HTTP stack."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )

    # Quiet down chatty loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
