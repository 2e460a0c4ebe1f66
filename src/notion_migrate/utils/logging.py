"""Logging setup: loguru sinks, library log routing and secret masking."""

import inspect
import logging
import re
import sys
from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger

CONSOLE_FORMAT = (
    '<green>{time:YYYY-MM-DD HH:mm:ss}</green> | '
    '<level>{level: <8}</level> | '
    '<cyan>{extra[component]}</cyan> | '
    '<level>{message}</level>'
)

FILE_FORMAT = (
    '{time:YYYY-MM-DD HH:mm:ss} | '
    '{level: <8} | '
    '{extra[component]} | '
    '{name}:{function}:{line} | '
    '{message}'
)

# HTTP and AWS libraries log through the standard logging module
LIBRARY_LOGGERS = ('aiohttp', 'asyncio', 'boto3', 'botocore', 'urllib3')

REDACTED = '[REDACTED]'
_BEARER_TOKEN = re.compile(r'(Bearer\s+)[^\s\'",}]+', re.IGNORECASE)


def redact(message: str, secrets: Iterable[str] = ()) -> str:
    """Mask bearer tokens and any of ``secrets`` found in ``message``."""
    message = _BEARER_TOKEN.sub(r'\1' + REDACTED, message)
    for secret in secrets:
        if secret:
            message = message.replace(secret, REDACTED)
    return message


def _redactor(secrets: Iterable[str]) -> Callable[[dict], None]:
    # Short values would mask ordinary words
    secrets = tuple(sorted((s for s in secrets if s and len(s) >= 8), key=len, reverse=True))

    def patch(record: dict) -> None:
        record['message'] = redact(record['message'], secrets)

    return patch


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Report the caller that logged, not the logging module itself
        frame, depth = inspect.currentframe(), 0
        while frame is not None and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.bind(component=record.name).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def intercept_library_logs(level: str = 'WARNING') -> None:
    """Send records of the standard logging module through loguru sinks."""
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    json_file: bool = False,
    secrets: Iterable[str] = (),
    library_level: str = 'WARNING',
) -> None:
    """Setup logging configuration using loguru.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        log_format: Optional custom console format
        json_file: Write the log file as one JSON object per line
        secrets: Values masked in every message, e.g. API tokens
        library_level: Threshold for records from aiohttp, botocore and friends
    """
    logger.remove()

    # Records logged without a bound component still format cleanly
    logger.configure(
        extra={'component': 'notion-migrate'}, patcher=_redactor(secrets)
    )

    logger.add(
        sys.stderr,
        format=log_format or CONSOLE_FORMAT,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=False,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        sink_options = {'serialize': True} if json_file else {'format': FILE_FORMAT}
        logger.add(
            log_file,
            level=level,
            rotation='10 MB',
            retention='30 days',
            compression='gz',
            backtrace=True,
            diagnose=False,
            **sink_options,
        )

    intercept_library_logs(library_level)

    logger.debug(f'Logging initialized with level: {level}')
    if log_file:
        logger.info(f'Log file: {log_file}')
