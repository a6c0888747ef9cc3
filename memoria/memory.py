"""User memory: a byte space split into fixed or dynamic partitions."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime

from memoria.config import Algoritmo, Esquema
from memoria.messages import BYTES_PER_OPERATION

FREE_PID = -1

_log = logging.getLogger("Memoria")


class InvalidLayoutError(ValueError):
    """The configured partitions do not fit in the memory."""


@dataclass
class Partition:
    """A contiguous region of user memory."""

    start: int
    size: int
    free: bool = True
    pid: int = FREE_PID

    @property
    def end(self) -> int:
        """First address past the partition."""
        return self.start + self.size


class MemoryManager:
    """Owns the user memory space and its partition table.

    Every public method is safe to call from several threads at once.
    """

    def __init__(
        self,
        size: int,
        scheme: Esquema,
        algorithm: Algoritmo,
        partitions: tuple[int, ...] | list[int] | None = None,
    ) -> None:
        if size < 0:
            raise InvalidLayoutError(f"memory size must not be negative, got {size}")
        if not isinstance(scheme, Esquema):
            raise ValueError(f"invalid memory scheme: {scheme!r}")
        if not isinstance(algorithm, Algoritmo):
            raise ValueError(f"invalid search algorithm: {algorithm!r}")
        self.size = size
        self.scheme = scheme
        self.algorithm = algorithm
        self._lock = threading.RLock()
        self._space = bytearray(size)
        if scheme is Esquema.DINAMICAS:
            self._partitions = [Partition(0, size)]
        else:
            self._partitions = self._fixed_layout(partitions or ())

    def _fixed_layout(self, sizes) -> list[Partition]:
        layout = []
        offset = 0
        for part_size in sizes:
            if part_size < 0:
                raise InvalidLayoutError(f"negative partition size: {part_size}")
            layout.append(Partition(offset, part_size))
            offset += part_size
        if offset > self.size:
            raise InvalidLayoutError(
                "El tamaño total de las particiones excede la memoria disponible. "
                f"Tamaño total: {offset}, Memoria disponible: {self.size}"
            )
        return layout

    @property
    def partitions(self) -> tuple[Partition, ...]:
        """A snapshot of the partition table, in address order."""
        with self._lock:
            return tuple(replace(p) for p in self._partitions)

    def allocate(self, size: int, pid: int) -> bool:
        """Give a partition of at least ``size`` bytes to ``pid``; False if none fits."""
        with self._lock:
            chosen = self.choose_partition(size)
            if chosen is None:
                return False
            if self.scheme is Esquema.DINAMICAS:
                remaining = chosen.size - size
                chosen.size = size
                if remaining > 0:
                    index = next(
                        i for i, p in enumerate(self._partitions) if p is chosen
                    )
                    self._partitions.insert(
                        index + 1, Partition(chosen.start + size, remaining)
                    )
            chosen.free = False
            chosen.pid = pid
            self._space[chosen.start : chosen.end] = bytes(chosen.size)
            _log.debug(
                "Particion de tamaño %d asignada al proceso %d", chosen.size, pid
            )
            return True

    def release(self, start: int) -> None:
        """Free the occupied partition that begins at ``start``."""
        with self._lock:
            for partition in self._partitions:
                if partition.start == start and not partition.free:
                    partition.free = True
                    partition.pid = FREE_PID
                    break

    def release_pid(self, pid: int) -> None:
        """Free the partition held by ``pid``, merging free neighbours if dynamic."""
        with self._lock:
            partition = self.find_by_pid(pid)
            if partition is None:
                return
            partition.free = True
            partition.pid = FREE_PID
            if self.scheme is Esquema.DINAMICAS:
                self.consolidate()
            _log.debug("%s", self.describe())

    def _check_range(self, address: int) -> None:
        if address < 0 or address + BYTES_PER_OPERATION > self.size:
            raise IndexError(
                f"address {address} out of user memory of {self.size} bytes"
            )

    def write(self, address: int, data: bytes) -> None:
        """Write four bytes at a physical address."""
        if len(data) != BYTES_PER_OPERATION:
            raise ValueError(
                f"a write takes exactly {BYTES_PER_OPERATION} bytes, got {len(data)}"
            )
        with self._lock:
            self._check_range(address)
            self._space[address : address + BYTES_PER_OPERATION] = data

    def read(self, address: int) -> bytes:
        """Read four bytes at a physical address."""
        with self._lock:
            self._check_range(address)
            return bytes(self._space[address : address + BYTES_PER_OPERATION])

    def consolidate(self) -> None:
        """Merge every run of adjacent free partitions into one."""
        with self._lock:
            merged: list[Partition] = []
            for partition in self._partitions:
                if merged and merged[-1].free and partition.free:
                    merged[-1].size += partition.size
                else:
                    merged.append(partition)
            self._partitions = merged

    def content_of(self, pid: int) -> bytes | None:
        """Copy of the partition held by ``pid``, or None."""
        with self._lock:
            partition = self.find_by_pid(pid)
            if partition is None:
                return None
            return bytes(self._space[partition.start : partition.end])

    def partition_size(self, pid: int) -> int:
        """Size of the partition held by ``pid``, 0 if it holds none."""
        with self._lock:
            partition = self.find_by_pid(pid)
            return 0 if partition is None else partition.size

    def partition_bounds(self, pid: int) -> tuple[int, int] | None:
        """Base and limit of the partition held by ``pid``, or None."""
        with self._lock:
            for partition in self._partitions:
                if partition.pid == pid:
                    return partition.start, partition.end
            return None

    def _candidates(self, size: int) -> list[Partition]:
        return [p for p in self._partitions if p.free and p.size >= size]

    def first_fit(self, size: int) -> Partition | None:
        """First free partition large enough."""
        with self._lock:
            return next(iter(self._candidates(size)), None)

    def best_fit(self, size: int) -> Partition | None:
        """Smallest free partition large enough; the earliest among ties."""
        with self._lock:
            return min(self._candidates(size), key=lambda p: p.size, default=None)

    def worst_fit(self, size: int) -> Partition | None:
        """Largest free partition large enough; the earliest among ties."""
        with self._lock:
            return max(self._candidates(size), key=lambda p: p.size, default=None)

    def choose_partition(self, size: int) -> Partition | None:
        """Pick a free partition with the configured algorithm."""
        if self.algorithm is Algoritmo.FIRST_FIT:
            return self.first_fit(size)
        if self.algorithm is Algoritmo.BEST_FIT:
            return self.best_fit(size)
        return self.worst_fit(size)

    def find_by_pid(self, pid: int) -> Partition | None:
        """The occupied partition held by ``pid``, or None."""
        with self._lock:
            for partition in self._partitions:
                if partition.pid == pid and not partition.free:
                    return partition
            return None

    def describe(self) -> str:
        """The partition table as ``{[size;pid]...}``."""
        with self._lock:
            body = "".join(f"[{p.size};{p.pid}]" for p in self._partitions)
            return "{" + body + "}"


def dump_filename(pid: int, tid: int, now: datetime | None = None) -> str:
    """Name of the dump file: ``<pid>-<tid>-<HH:MM:SS:mmm>.dmp``."""
    now = now or datetime.now()
    return f"{pid}-{tid}-{now:%H:%M:%S}:{now.microsecond // 1000:03d}.dmp"