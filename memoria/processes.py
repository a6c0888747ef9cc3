"""Creating and ending processes."""

from __future__ import annotations

import logging

from memoria.memory import MemoryManager
from memoria.threads import ThreadTable

MAIN_THREAD = 0

_log = logging.getLogger("Memoria")


def create_process(
    memory: MemoryManager,
    threads: ThreadTable,
    pid: int,
    size: int,
    instructions: list[str],
) -> bool:
    """Allocate memory for a process and create its main thread.

    Returns False, creating nothing, when no partition can hold it.
    """
    allocated = memory.allocate(size, pid)
    _log.debug("%s", memory.describe())
    if not allocated:
        _log.error(
            "No se pudo asignar memoria para el proceso. Tamaño: %d, PID: %d",
            size,
            pid,
        )
        return False
    threads.create(pid, MAIN_THREAD, instructions)
    return True


def end_process(memory: MemoryManager, threads: ThreadTable, pid: int) -> None:
    """Free the memory of a process and forget all its threads."""
    memory.release_pid(pid)
    threads.end_process(pid)