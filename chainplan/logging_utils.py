import logging
import sys
import typing
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: int = logging.INFO, log_path: typing.Optional[Path] = None) -> None:
    """
    Sends library logs to stderr (and optionally a file) if no handlers are present.
    Stdout stays free for command output such as JSON summaries.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    handlers: typing.List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_path:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
    )
