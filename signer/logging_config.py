"""
Logging setup for the signing backend.
"""

import logging
import sys
from typing import Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_NOISY_LOGGERS = ('urllib3', 'requests')


def setup_logging(level: Union[str, int] = 'INFO', stream=None) -> logging.Logger:
    """
    Configure the root logger once.

    Calling it again only adjusts the level, so repeated invocations in the
    same process do not stack handlers.

    Args:
        level: Level name or number
        stream: Output stream (defaults to stderr)

    Returns:
        The root logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    if not any(getattr(h, '_signer_handler', False) for h in root.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._signer_handler = True
        root.addHandler(handler)

    # Suppress verbose third-party logs unless in debug mode
    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return root
