import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s %(levelname).1s | %(name)s: %(message)s"


def configure_logging(log_path: Optional[Path] = None, level: str = "INFO", console: bool = True) -> logging.Logger:
    """
    Route dbagent logs to the agent log file and, optionally, a rich stderr handler.

    The agent log is one of the uploaded artifacts, so it is opened in append
    mode and shared across runs of the same working directory.
    """
    root = logging.getLogger("dbagent")
    root.setLevel(level.upper())
    root.propagate = False

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(file_handler)

    if console:
        root.addHandler(RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=False))

    return root
