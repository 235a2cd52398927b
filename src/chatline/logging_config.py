from __future__ import annotations

import logging
from pathlib import Path

from .config import ServerConfig


def _level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(
    cfg: ServerConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> int:
    """Install root handlers for the chat server and return the effective level.

    Previously installed root handlers are replaced, so calling this twice
    does not duplicate output.
    """

    level = _level(override_level or cfg.log_level)

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    log_file = override_file or cfg.log_file
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(fmt=cfg.log_format, datefmt=cfg.log_datefmt)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    # one line per HTTP request is noise outside of debugging
    logging.getLogger("aiohttp.access").setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)

    logging.captureWarnings(True)
    return level
