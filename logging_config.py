# logging_config.py
import logging
import sys

from settings import settings


def configure_logging(level: str = None) -> None:
    """
    Configure application-wide logging: one stdout handler on the root logger.
    Used by both the API process and the standalone worker.
    """
    fmt = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt))

    root_logger = logging.getLogger()
    root_logger.setLevel((level or settings.log_level).upper())
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Optional noise reduction
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
