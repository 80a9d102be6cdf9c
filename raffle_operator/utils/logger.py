"""Logging setup for the raffle operator.

``get_logger(name)`` configures the root logger on first use from the
LOG_LEVEL and LOG_FILE environment variables. ``set_log_level`` changes
the level afterwards, e.g. from the ``logging`` config section.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Chatty transport loggers, kept at WARNING unless LOG_LEVEL is DEBUG
NOISY_LOGGERS = ('web3', 'urllib3', 'uvicorn.access')

_configured = False


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Install console (and optional file) handlers on the root logger once."""
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv('LOG_LEVEL') or 'INFO').upper()
    log_file = log_file if log_file is not None else os.getenv('LOG_FILE', '')
    numeric_level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding='utf-8')
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError:
            root.exception('Cannot open log file %s; logging to console only', log_file)

    if numeric_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def set_log_level(level: str) -> None:
    """Change the root level after handlers are installed."""
    configure_logging()
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        logging.getLogger(__name__).warning('Ignoring unknown log level %r', level)
        return
    logging.getLogger().setLevel(numeric_level)
