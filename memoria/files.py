"""Reading instruction files."""

from __future__ import annotations

import logging
from pathlib import Path

_log = logging.getLogger(__name__)


def read_lines(path: str | Path, logger: logging.Logger | None = None) -> list[str]:
    """Return the lines of a file without their newline.

    A file that cannot be opened is logged as an error and gives an empty list.
    """
    logger = logger or _log
    try:
        with open(path, "rb") as handle:
            return [
                raw.rstrip(b"\n").decode("utf-8", errors="replace") for raw in handle
            ]
    except OSError:
        logger.error("Error al abrir el archivo: %s", path)
        return []