"""Logging for entitymap.

Every module logs through ``get_logger(__name__)`` under the ``entitymap``
namespace. The CLI calls ``setup_logging`` once to send those records to
stderr through rich.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "entitymap"


def _level(verbose: bool, level_name: Optional[str]) -> int:
    if verbose:
        return logging.DEBUG
    if level_name:
        level = logging.getLevelName(level_name.upper())
        if isinstance(level, int):
            return level
    return logging.WARNING


def setup_logging(verbose: bool = False, level_name: Optional[str] = None) -> logging.Logger:
    """Attach a rich handler to the entitymap logger.

    ``verbose`` forces DEBUG. Otherwise ``level_name`` (``Settings.log_level``)
    applies, falling back to WARNING when it is unset or unknown. Calling this
    again replaces the handler instead of stacking a second one.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in [h for h in logger.handlers if isinstance(h, RichHandler)]:
        logger.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        markup=False,
        show_path=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.setLevel(_level(verbose, level_name))
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if name is None:
        return logging.getLogger(ROOT_LOGGER)
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
