"""Logging configuration for the application process."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the running process."""
    resolved = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logging.getLogger("forum_stage").setLevel(resolved)
    # httpx logs every request at INFO, which drowns out worker output.
    logging.getLogger("httpx").setLevel(max(resolved, logging.WARNING))
