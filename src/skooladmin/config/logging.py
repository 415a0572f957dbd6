import logging


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach one stream handler to the package logger. Safe to call repeatedly."""
    logger = logging.getLogger("skooladmin")
    logger.setLevel(level)
    if not any(getattr(handler, "_skooladmin", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._skooladmin = True
        logger.addHandler(handler)
    return logger
