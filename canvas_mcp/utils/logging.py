"""Logging setup shared by the STDIO server and the OAuth proxy."""

import os
import logging
import datetime
from logging.handlers import RotatingFileHandler
from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(name)s] %(message)s'
LOG_FILE = 'canvas_mcp.log'

# Request URLs and MCP frames are noisy at INFO; they only reach the log file
QUIET_LOGGERS = ('httpx', 'httpcore', 'aiohttp.access', 'mcp', 'fastmcp')


class UTCFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        dt = datetime.datetime.fromtimestamp(record.created, tz=datetime.timezone.utc)
        return dt.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the canvas_mcp hierarchy."""
    if not name.startswith("canvas_mcp"):
        name = f"canvas_mcp.{name}"
    return logging.getLogger(name)


def configure_logging(log_level=None, log_dir=None):
    """
    Send logs to stderr (INFO and above) and to a rotating file at `log_level`.

    Args:
        log_level: Level name or number; defaults to LOG_LEVEL or INFO
        log_dir: Directory for the log file; defaults to LOG_DIR or ./logs

    Returns:
        The configured root logger
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO')
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    # stdout carries the MCP stream, so the console handler must stay on stderr
    console_level = max(log_level, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = UTCFormatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)
    root_logger.addHandler(console_handler)

    log_dir = log_dir or os.getenv('LOG_DIR') or os.path.join(os.getcwd(), 'logs')
    os.makedirs(log_dir, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE),
        maxBytes=10*1024*1024,
        backupCount=5
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(log_level)
    root_logger.addHandler(file_handler)

    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(max(log_level, logging.WARNING))

    return root_logger
