import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single console handler to the package logger.

    Calling this more than once only updates the level.
    """
    logger = logging.getLogger("internet_id")
    logger.setLevel(level.upper())

    if not any(getattr(h, "_internet_id", False) for h in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        console._internet_id = True
        logger.addHandler(console)

    for handler in logger.handlers:
        handler.setLevel(level.upper())

    return logger
