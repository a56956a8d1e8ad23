import logging
import sys

from pythonjsonlogger.json import JsonFormatter  # type: ignore[import-untyped]


def configure_logging(level: str = "info") -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger()
    logger.setLevel(lvl)
    handler = logging.StreamHandler(sys.stdout)
    fmt = JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    handler.setFormatter(fmt)
    logger.handlers = [handler]
    # SQL echo is noisy in JSON form; keep it behind DEBUG
    if lvl > logging.DEBUG:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
