import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Install a single stream handler on the root logger.
    Safe to call more than once (server startup and CLI both call it).
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    for h in root.handlers:
        if getattr(h, "_tixrecon", False):
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._tixrecon = True
    root.addHandler(handler)
