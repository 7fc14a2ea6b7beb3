import logging

from machine_controller.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


def configure_logging() -> None:
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    # Request lines from httpx would drown the reconcile logs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
