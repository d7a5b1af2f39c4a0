"""Configuración de logging.

Una sola línea por evento en stderr: timestamp ISO-8601, nivel, logger y
mensaje. A partir de WARNING se añade ``[archivo:línea]``.
"""

from __future__ import annotations

import logging
import sys


class _LineFormatter(logging.Formatter):
    """Formatter de una sola línea para la consola."""

    _BASE_FMT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
    _LOC_SUFFIX = "  [%(filename)s:%(lineno)d]"

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            self._style._fmt = self._BASE_FMT + self._LOC_SUFFIX
        else:
            self._style._fmt = self._BASE_FMT
        return super().format(record)


def configure_logging(level: str = "INFO") -> None:
    """Instalar el handler de consola en el logger del paquete."""
    logger = logging.getLogger("project_builder")
    logger.setLevel(level.upper())

    # Idempotente: no duplicar handlers si se llama dos veces
    for handler in logger.handlers:
        if isinstance(handler.formatter, _LineFormatter):
            return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_LineFormatter())
    logger.addHandler(handler)
    logger.propagate = False
