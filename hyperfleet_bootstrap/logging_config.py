import logging

import click


LOG_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ClickHandler(logging.Handler):
    """Writes records to stderr, which systemd captures into the journal."""

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(ClickHandler())
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    logging.getLogger("httpx").setLevel(logging.WARNING)
