"""Logger setup and the mandatory log lines of the memory module."""

from __future__ import annotations

import logging
import sys
from enum import Enum

MEMORIA = "Memoria"

_FORMAT = "[%(levelname)s] %(asctime)s:%(msecs)03d %(name)s/(%(process)d:%(thread)d): %(message)s"
_DATE_FORMAT = "%H:%M:%S"


class LogCondition(Enum):
    """What happened to the subject of a log line."""

    CREACION = "Creacion"
    DESTRUCCION = "Destruccion"
    SOLICITADO = "Solicitado"
    ACTUALIZADO = "Actualizado"
    ESCRITURA = "Escritura"
    LECTURA = "Lectura"


def create_logger(file: str, process_name: str, level: int) -> logging.Logger:
    """Configure a logger that writes to ``file`` and to standard output."""
    logger = logging.getLogger(process_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)
    for handler in (logging.FileHandler(file, encoding="utf-8"), logging.StreamHandler(sys.stdout)):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def _logger() -> logging.Logger:
    return logging.getLogger(MEMORIA)


def log_kernel_connected(fd: int) -> None:
    _logger().info("## Kernel Conectado - FD del socket: %d", fd)


def log_process(condition: LogCondition, pid: int, size: int) -> None:
    _logger().info("## Proceso %s -  PID: %d - Tamaño: %d", condition.value, pid, size)


def log_thread(condition: LogCondition, pid: int, tid: int) -> None:
    _logger().info("## Hilo %s - (PID:TID) - (%d:%d)", condition.value, pid, tid)


def log_context(condition: LogCondition, pid: int, tid: int) -> None:
    _logger().info("## Contexto %s - (PID:TID) - (%d:%d)", condition.value, pid, tid)


def log_instruction(pid: int, tid: int, instruction: str) -> None:
    _logger().info(
        "## Obtener instrucción - (PID:TID) - (%d:%d) - Instrucción: %s",
        pid,
        tid,
        instruction,
    )


def log_user_memory(
    condition: LogCondition, pid: int, tid: int, address: int, size: int
) -> None:
    _logger().info(
        "## %s - (PID:TID) - (%d:%d) - Dir. Física: %d - Tamaño: %d",
        condition.value,
        pid,
        tid,
        address,
        size,
    )


def log_memory_dump(pid: int, tid: int) -> None:
    _logger().info("## Memory Dump solicitado - (PID:TID) - (%d:%d)", pid, tid)