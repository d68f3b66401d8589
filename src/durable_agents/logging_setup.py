"""Process-wide logging configuration for the CLI and the gateway server."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

_QUIET_LIBRARIES = ("sqlalchemy", "alembic", "httpx", "httpcore", "uvicorn.access")


class _ConsoleNoiseFilter(logging.Filter):
    """Keep durable_agents records; let third-party records through only at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name == "durable_agents" or name.startswith("durable_agents."):
            return True
        if name == "py.warnings":
            return record.levelno >= logging.ERROR
        if name.startswith("uvicorn"):
            return record.levelno >= logging.INFO and name != "uvicorn.access"
        return record.levelno >= logging.WARNING


def setup_logging(
    *,
    level: str | int = logging.INFO,
    log_dir: str | Path | None = None,
    file_level: int = logging.DEBUG,
) -> None:
    """Configure the root logger once, before the first record is emitted.

    Console output is filtered; when ``log_dir`` is set, everything is also
    written to ``durable_agents.log`` there.
    """

    console_level = logging.getLevelName(level) if isinstance(level, str) else level

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_dir / "durable_agents.log"), encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.captureWarnings(True)
