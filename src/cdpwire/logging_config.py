"""Logging setup for the cdpwire package."""

import logging

from cdpwire.config import CONFIG

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_HANDLER_NAME = 'cdpwire-console'


def _coerce_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: str | int | None = None, wire_level: str | int | None = None) -> logging.Logger:
    """Attach a console handler to the ``cdpwire`` logger.

    Args:
        level: Package log level; defaults to ``CONFIG.LOGGING_LEVEL``.
        wire_level: Level of the raw frame logger ``cdpwire.wire``; defaults to
            ``CONFIG.CDP_LOGGING_LEVEL``.

    Returns:
        The configured ``cdpwire`` logger. Calling this again only updates the
        levels, it never stacks handlers.
    """
    logger = logging.getLogger('cdpwire')
    logger.setLevel(_coerce_level(level if level is not None else CONFIG.LOGGING_LEVEL))
    logging.getLogger('cdpwire.wire').setLevel(
        _coerce_level(wire_level if wire_level is not None else CONFIG.CDP_LOGGING_LEVEL)
    )

    if not any(handler.get_name() == _HANDLER_NAME for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
