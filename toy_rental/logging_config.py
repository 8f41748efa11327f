from __future__ import annotations

import logging
import sys

from toy_rental.config import Settings

ROOT_LOGGER_NAME = "toy_rental"
_HANDLER_NAME = "toy_rental.stdout"

_DEV_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
_PROD_FORMAT = 'time=%(asctime)s level=%(levelname)s logger=%(name)s msg="%(message)s"'


def configure_logging(settings: Settings) -> logging.Logger:
    """Install the stdout handler on the package logger.

    Called once from application startup. Calling it again replaces the
    formatter and level instead of stacking handlers.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    handler = next((h for h in logger.handlers if h.get_name() == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        logger.addHandler(handler)

    handler.setFormatter(logging.Formatter(_PROD_FORMAT if settings.is_prod else _DEV_FORMAT))
    logger.setLevel(getattr(logging, settings.log_level, logging.INFO))
    logger.propagate = False
    logger.info("Logging configured prod=%s level=%s", settings.is_prod, settings.log_level)
    return logger
