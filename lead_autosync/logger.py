"""Logging helpers for the lead auto-sync service."""

import logging


def get_logger(name: str = "LeadAutoSync") -> logging.Logger:
    """Return a named :class:`logging.Logger` instance.

    Note: Logging configuration should be done via logging.basicConfig()
    in the entry point (main.py or the CLI) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
