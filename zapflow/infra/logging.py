"""Structured JSON logging for the service."""

import logging
import sys
from pythonjsonlogger import jsonlogger
from zapflow.infra.config import config


class ServiceContextFilter(logging.Filter):
    """Stamp every record with the environment and tenant it came from."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.app_env = config.APP_ENV
        if not hasattr(record, "tenant_id"):
            record.tenant_id = config.DEFAULT_TENANT_ID
        return True


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("zapflow")
    logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
    logger.handlers = []

    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(app_env)s %(tenant_id)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(ServiceContextFilter())
    logger.addHandler(handler)

    # Gateway and socket libraries log every request at INFO
    for name, level in (
        ("uvicorn", logging.INFO),
        ("sqlalchemy", logging.WARNING),
        ("httpx", logging.WARNING),
        ("websockets", logging.WARNING),
    ):
        logging.getLogger(name).setLevel(level)

    return logger


app_logger = setup_logging()
