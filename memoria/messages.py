"""Messages exchanged with the kernel, the CPU and the filesystem."""

from __future__ import annotations

import logging
import socket
import struct
from dataclasses import dataclass, field
from pathlib import Path

from memoria.config import MemoriaConfig
from memoria.files import read_lines
from memoria.protocol import (
    OpCode,
    Packet,
    ProtocolError,
    connect,
    recv_int,
    recv_packet,
    send_int,
    send_packet,
)

BYTES_PER_OPERATION = 4
SEPARATOR_PATH = "/"

_log = logging.getLogger("Memoria")

_PID_TID = struct.Struct("<II")
_PID_TID_ADDR = struct.Struct("<III")
_ID = struct.Struct("<i")
_CONTEXT_UPDATE = struct.Struct("<11I")
_EXECUTION_CONTEXT = struct.Struct("<11I")
_SIZE_T = struct.Struct("<Q")


@dataclass(frozen=True)
class ThreadPayload:
    """A thread to create, with the instructions it runs."""

    pid: int
    tid: int
    instructions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProcessPayload:
    """A process to create, with its size and the instructions of its main thread."""

    pid: int
    size: int
    instructions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ContextUpdate:
    """New register values for a thread."""

    pid: int
    tid: int
    ax: int = 0
    bx: int = 0
    cx: int = 0
    dx: int = 0
    ex: int = 0
    fx: int = 0
    gx: int = 0
    hx: int = 0
    pc: int = 0


@dataclass
class ExecutionContext:
    """Registers of a thread plus the bounds of its process's partition."""

    ax: int = 0
    bx: int = 0
    cx: int = 0
    dx: int = 0
    ex: int = 0
    fx: int = 0
    gx: int = 0
    hx: int = 0
    pc: int = 0
    base: int = 0
    limite: int = 0

    def encode(self) -> bytes:
        """Return the context as the payload sent to the CPU."""
        return _EXECUTION_CONTEXT.pack(
            self.ax,
            self.bx,
            self.cx,
            self.dx,
            self.ex,
            self.fx,
            self.gx,
            self.hx,
            self.pc,
            self.base,
            self.limite,
        )


@dataclass(frozen=True)
class PidTid:
    """A request that names a single thread."""

    pid: int
    tid: int


@dataclass(frozen=True)
class MemoryReadRequest:
    """Read of user memory at a physical address."""

    pid: int
    tid: int
    address: int


@dataclass(frozen=True)
class MemoryWriteRequest:
    """Write of user memory at a physical address."""

    pid: int
    tid: int
    address: int
    data: bytes


@dataclass(frozen=True)
class InstructionRequest:
    """Request for the instruction at a program counter."""

    pid: int
    tid: int
    pc: int


def _unpack(layout: struct.Struct, payload: bytes, what: str) -> tuple[int, ...]:
    if len(payload) < layout.size:
        raise ProtocolError(
            f"{what}: expected at least {layout.size} bytes, got {len(payload)}"
        )
    return layout.unpack_from(payload)


def _read_instructions(payload: bytes, instructions_dir: str | Path) -> list[str]:
    relative = payload.decode("utf-8", errors="replace")
    absolute = f"{instructions_dir}{SEPARATOR_PATH}{relative}"
    _log.debug("Leyendo instrucciones de: %s", absolute)
    return read_lines(absolute, _log)


def decode_thread(payload: bytes, instructions_dir: str | Path) -> ThreadPayload:
    """Decode a thread creation and load its pseudocode file."""
    pid, tid = _unpack(_PID_TID, payload, "thread")
    instructions = _read_instructions(payload[_PID_TID.size :], instructions_dir)
    return ThreadPayload(pid, tid, instructions)


def decode_process(payload: bytes, instructions_dir: str | Path) -> ProcessPayload:
    """Decode a process creation and load its pseudocode file."""
    pid, size = _unpack(_PID_TID, payload, "process")
    instructions = _read_instructions(payload[_PID_TID.size :], instructions_dir)
    return ProcessPayload(pid, size, instructions)


def decode_id(payload: bytes) -> int:
    """Decode a single integer identifier."""
    (value,) = _unpack(_ID, payload, "id")
    return value


def decode_context_update(payload: bytes) -> ContextUpdate:
    """Decode pid, tid, the eight registers and the program counter."""
    return ContextUpdate(*_unpack(_CONTEXT_UPDATE, payload, "context update"))


def decode_pid_tid(payload: bytes) -> PidTid:
    """Decode a request naming a thread."""
    return PidTid(*_unpack(_PID_TID, payload, "pid/tid"))


def decode_read_request(payload: bytes) -> MemoryReadRequest:
    """Decode a memory read request."""
    return MemoryReadRequest(*_unpack(_PID_TID_ADDR, payload, "read request"))


def decode_write_request(payload: bytes) -> MemoryWriteRequest:
    """Decode a memory write request carrying four bytes of data."""
    pid, tid, address = _unpack(_PID_TID_ADDR, payload, "write request")
    data = payload[_PID_TID_ADDR.size : _PID_TID_ADDR.size + BYTES_PER_OPERATION]
    if len(data) < BYTES_PER_OPERATION:
        raise ProtocolError(
            f"write request: expected {BYTES_PER_OPERATION} data bytes, got {len(data)}"
        )
    return MemoryWriteRequest(pid, tid, address, bytes(data))


def decode_instruction_request(payload: bytes) -> InstructionRequest:
    """Decode a request for an instruction."""
    return InstructionRequest(*_unpack(_PID_TID_ADDR, payload, "instruction request"))


def encode_dump_request(filename: str, content: bytes) -> bytes:
    """Build the payload asking the filesystem to write a dump file."""
    name = filename.encode("utf-8")
    data = bytes(content)
    return _SIZE_T.pack(len(name)) + name + _SIZE_T.pack(len(data)) + data


def send_status(sock: socket.socket, op_code: int) -> None:
    """Answer a request with a bare status code."""
    send_int(sock, op_code)


def send_read_response(sock: socket.socket, data: bytes) -> None:
    """Send the bytes read from user memory."""
    if len(data) != BYTES_PER_OPERATION:
        raise ValueError(
            f"a read returns exactly {BYTES_PER_OPERATION} bytes, got {len(data)}"
        )
    send_packet(sock, Packet(OpCode.OK, bytes(data)))


def send_instruction(sock: socket.socket, instruction: str) -> None:
    """Send an instruction line to the CPU."""
    send_packet(sock, Packet(OpCode.OK, instruction.encode("utf-8")))


def send_context(sock: socket.socket, op_code: int, context: ExecutionContext) -> None:
    """Send an execution context to the CPU."""
    send_packet(sock, Packet(op_code, context.encode()))


def send_dump_request(sock: socket.socket, filename: str, content: bytes) -> None:
    """Ask the filesystem to write ``content`` into ``filename``."""
    send_packet(sock, Packet(OpCode.WRITE_FILE, encode_dump_request(filename, content)))


def receive_filesystem_response(sock: socket.socket) -> str | None:
    """Return None on OK, otherwise the filesystem's message (closing the socket)."""
    packet = recv_packet(sock)
    if packet.op_code == OpCode.OK:
        return None
    content = packet.payload.decode("utf-8", errors="replace")
    sock.close()
    return content


def connect_filesystem(config: MemoriaConfig) -> socket.socket:
    """Connect and handshake with the filesystem; raise ProtocolError if refused."""
    sock = connect(config.filesystem_ip, config.filesystem_port)
    try:
        _log.debug("Conexion con FILESYSTEM creada con exito")
        send_int(sock, OpCode.HANDSHAKE_MEMORIA)
        answer = recv_int(sock)
    except Exception:
        sock.close()
        raise
    if answer != OpCode.HANDSHAKE_ACCEPTED:
        sock.close()
        _log.error("No se pudo conectar con el servidor de FILESYSTEM")
        raise ProtocolError("No se pudo conectar con el servidor de FILESYSTEM")
    return sock