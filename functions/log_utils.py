"""
Logging helpers shared by the forecasting modules.
"""

import logging
import time


LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logger(
    name: str,
    level: int = logging.INFO
) -> logging.Logger:
    """
    Configure and return a named logger.

    A single stream handler with the format
    "%(asctime)s - %(levelname)s - %(message)s" is attached the first time the
    logger is requested; later calls return the same logger untouched.

    Parameters
    ----------
    name : str
        Logger name, normally the calling module's ``__name__``.
    level : int, default logging.INFO
        Threshold set on the logger.

    Returns
    -------
    logging.Logger
    """

    logger = logging.getLogger(name)

    logger.setLevel(level)

    if not logger.handlers:

        ch = logging.StreamHandler()

        ch.setFormatter(logging.Formatter(LOG_FORMAT))

        logger.addHandler(ch)

    return logger


logger = configure_logger(__name__)


class LogTimer:
    """
    Context manager that logs the wall-clock duration of a block.

    On exit it logs either the elapsed seconds or, when an exception escaped
    the block, an error with the runtime up to the failure. The exception is
    not suppressed.
    """

    def __init__(
        self,
        name: str,
        logger: logging.Logger = logger
    ):

        self.name = name

        self.logger = logger

        self.t0 = None


    def __enter__(self):

        self.t0 = time.perf_counter()

        self.logger.info("%s ...", self.name)

        return self


    def __exit__(
        self,
        exc_type,
        exc,
        tb
    ):

        dt = time.perf_counter() - self.t0

        if exc is None:

            self.logger.info("%s done in %.2fs", self.name, dt)

        else:

            self.logger.error("%s failed after %.2fs: %s", self.name, dt, exc)

        return False
