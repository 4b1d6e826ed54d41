# pendq/core/logging.py
"""Component loggers: `pendq.<component>`, one stdout handler each.

    [14:02:07] [runner]     [INFO]    Claimed 3 task(s)
"""

import logging
import os
import sys
from datetime import datetime
from typing import IO, Any, Optional

_ROOT = 'pendq'

# Level given to loggers created from now on; see configure_logging().
_default_level: int = logging.INFO

# [scheduler] is the widest tag
_COMPONENT_WIDTH = 13
_LEVEL_WIDTH = 10

_RESET = '\033[0m'
_TIME_COLOR = '\033[94m'
_TEXT_COLOR = '\033[97m'
_LEVEL_COLORS = {
    logging.DEBUG: '\033[90m',
    logging.INFO: '\033[92m',
    logging.WARNING: '\033[93m',
    logging.ERROR: '\033[91m',
    logging.CRITICAL: '\033[1;91m',
}


def color_enabled(stream: IO[Any]) -> bool:
    """PENDQ_FORCE_COLOR wins, then NO_COLOR (https://no-color.org/), then isatty()."""
    if os.environ.get('PENDQ_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True
    if os.environ.get('NO_COLOR') is not None:
        return False
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


class ComponentFormatter(logging.Formatter):
    """`[time] [component] [LEVEL] message` in fixed-width columns."""

    def __init__(self, use_colors: bool = False) -> None:
        super().__init__()
        self.use_colors = use_colors

    def _paint(self, color: str, text: str) -> str:
        return f'{color}{text}{_RESET}' if self.use_colors else text

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        component = record.name.rsplit('.', 1)[-1]
        level_color = _LEVEL_COLORS.get(record.levelno, _TEXT_COLOR)

        line = (
            self._paint(_TIME_COLOR, f'[{time_str}]')
            + ' '
            + self._paint(_TEXT_COLOR, f'[{component}]'.ljust(_COMPONENT_WIDTH))
            + self._paint(level_color, f'[{record.levelname}]'.ljust(_LEVEL_WIDTH))
            + self._paint(_TEXT_COLOR, record.getMessage())
        )
        if record.exc_info:
            line += '\n' + self.formatException(record.exc_info)
        return line


def get_logger(component_name: str) -> logging.Logger:
    """Logger `pendq.<component_name>`, configured on first use and not propagating."""
    logger = logging.getLogger(f'{_ROOT}.{component_name}')
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ComponentFormatter(use_colors=color_enabled(sys.stdout)))
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        logger.propagate = False
    return logger


def configure_logging(level: int | str) -> int:
    """Apply `level` to every pendq logger, existing and future.

    Accepts a level number or name ('debug', 'INFO'); unknown names fall back
    to INFO. Returns the level applied.
    """
    global _default_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    _default_level = level

    logging.getLogger(_ROOT).setLevel(level)
    for name in list(logging.Logger.manager.loggerDict):
        if isinstance(name, str) and name.startswith(f'{_ROOT}.'):
            logging.getLogger(name).setLevel(level)
    return level
