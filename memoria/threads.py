"""Execution contexts of the threads known to memory."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from memoria.messages import ContextUpdate, ExecutionContext

END_OF_INSTRUCTIONS = "FIN"
THREAD_NOT_FOUND = "ERROR: PID:TID no encontrado."

_REGISTERS = ("ax", "bx", "cx", "dx", "ex", "fx", "gx", "hx", "pc")

_log = logging.getLogger("Memoria")


@dataclass
class ThreadContext:
    """Registers and instructions of one thread."""

    pid: int
    tid: int
    instructions: list[str] = field(default_factory=list)
    ax: int = 0
    bx: int = 0
    cx: int = 0
    dx: int = 0
    ex: int = 0
    fx: int = 0
    gx: int = 0
    hx: int = 0
    pc: int = 0


class ThreadTable:
    """Thread contexts keyed by (pid, tid), in creation order.

    Every public method is safe to call from several threads at once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._threads: list[ThreadContext] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._threads)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        pid, tid = key
        with self._lock:
            return self._find(pid, tid) is not None

    def _find(self, pid: int, tid: int) -> ThreadContext | None:
        return next(
            (t for t in self._threads if t.pid == pid and t.tid == tid), None
        )

    def create(self, pid: int, tid: int, instructions: list[str]) -> ThreadContext:
        """Register a thread with every register set to zero."""
        context = ThreadContext(pid, tid, list(instructions))
        with self._lock:
            self._threads.append(context)
        return context

    def end(self, pid: int, tid: int) -> bool:
        """Forget a thread; log an error and return False if it is unknown."""
        with self._lock:
            context = self._find(pid, tid)
            if context is not None:
                self._threads.remove(context)
                return True
        _log.error("Error: TID %d no encontrado.", tid)
        return False

    def end_process(self, pid: int) -> int:
        """Forget every thread of a process; return how many were removed."""
        with self._lock:
            kept = [t for t in self._threads if t.pid != pid]
            removed = len(self._threads) - len(kept)
            self._threads = kept
            return removed

    def context(self, pid: int, tid: int) -> ExecutionContext | None:
        """The registers of a thread, without partition bounds; None if unknown."""
        with self._lock:
            found = self._find(pid, tid)
            if found is None:
                return None
            return ExecutionContext(
                **{name: getattr(found, name) for name in _REGISTERS}
            )

    def update(self, update: ContextUpdate) -> bool:
        """Overwrite a thread's registers; return False if it is unknown."""
        with self._lock:
            found = self._find(update.pid, update.tid)
            if found is None:
                return False
            for name in _REGISTERS:
                setattr(found, name, getattr(update, name))
            return True

    def instruction(self, pid: int, tid: int, pc: int) -> str:
        """The instruction at ``pc``, ``FIN`` past the end, or an error text."""
        with self._lock:
            found = self._find(pid, tid)
            if found is None:
                return THREAD_NOT_FOUND
            if 0 <= pc < len(found.instructions):
                return found.instructions[pc]
            return END_OF_INSTRUCTIONS