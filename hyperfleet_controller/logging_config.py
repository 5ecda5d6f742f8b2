import logging

from hyperfleet_controller.config import get_settings


LOG_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | None = None) -> None:
    level_name = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.getLevelNamesMapping().get(level_name, logging.INFO))
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
