"""Wire protocol shared by the modules: op codes, packets and socket helpers."""

from __future__ import annotations

import socket
import struct
from dataclasses import dataclass
from enum import IntEnum

_INT = struct.Struct("<i")
_HEADER = struct.Struct("<ii")

UNKNOWN_SYSCALL = "SYSCALL NO RECONOCIDA"


class OpCode(IntEnum):
    """Operation codes exchanged between the modules."""

    # Interrupts and syscalls that trigger re-planning
    END_OF_QUANTUM = 0
    BLOCK_THREAD_JOIN = 1
    BLOCK_IO = 2
    BLOCK_BY_MUTEX = 3
    BLOCK_BY_DUMP = 4
    END_BY_THREAD_CANCEL = 5
    END_BY_THREAD_EXIT = 6
    END_BY_PROCESS_EXIT = 7
    END_BY_SEGMENTATION_FAULT = 8
    NOT_BLOCK_THREAD_JOIN = 9
    NOT_BLOCK_BY_MUTEX = 10
    NOT_END_BY_THREAD_CANCEL = 11
    # Syscalls
    ERROR_CK = 12
    PROCESS_CREATE = 13
    PROCESS_EXIT = 14
    THREAD_CREATE = 15
    THREAD_JOIN = 16
    THREAD_CANCEL = 17
    THREAD_EXIT = 18
    MUTEX_CREATE = 19
    MUTEX_LOCK = 20
    MUTEX_UNLOCK = 21
    DUMP_MEMORY = 22
    IO = 23
    EJECUTAR_HILO = 24
    SYSCALL = 25
    # Handshakes
    HANDSHAKE_KERNEL = 26
    HANDSHAKE_CPU = 27
    HANDSHAKE_MEMORIA = 28
    HANDSHAKE_FILESYSTEM = 29
    HANDSHAKE_ACCEPTED = 30
    HANDSHAKE_DENIED = 31
    # CPU -> memory
    GET_CONTEXTO_EJECUCION = 32
    UPD_CONTEXTO_EJECUCION = 33
    GET_INSTRUCCION = 34
    READ_MEM = 35
    WRITE_MEM = 36
    # Kernel -> memory
    CREATE_PROCESS = 37
    END_PROCESS = 38
    CREATE_THREAD = 39
    END_THREAD = 40
    MEMORY_DUMP = 41
    # Memory -> filesystem
    WRITE_FILE = 42
    # General
    OK = 43
    ERROR = 44


class Syscall(IntEnum):
    """Syscalls a thread can issue."""

    PROCESS_CREATE = 0
    PROCESS_EXIT = 1
    THREAD_CREATE = 2
    THREAD_JOIN = 3
    THREAD_CANCEL = 4
    THREAD_EXIT = 5
    MUTEX_CREATE = 6
    MUTEX_LOCK = 7
    MUTEX_UNLOCK = 8
    DUMP_MEMORY = 9
    IO = 10


class ProtocolError(ConnectionError):
    """The peer closed the connection or sent a malformed message."""


def _as_op_code(value: int) -> int:
    try:
        return OpCode(value)
    except ValueError:
        return value


@dataclass
class Packet:
    """An op code followed by a length-prefixed payload."""

    op_code: int
    payload: bytes = b""

    def encode(self) -> bytes:
        """Return the packet as it goes on the wire."""
        return _HEADER.pack(int(self.op_code), len(self.payload)) + bytes(self.payload)


def syscall_to_string(syscall: int) -> str:
    """Return the display name of a syscall code."""
    try:
        return Syscall(syscall).name
    except ValueError:
        return UNKNOWN_SYSCALL


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes, raising ProtocolError if the peer closes first."""
    if size < 0:
        raise ProtocolError(f"invalid size {size}")
    chunks = bytearray()
    while len(chunks) < size:
        chunk = sock.recv(size - len(chunks))
        if not chunk:
            raise ProtocolError(
                f"connection closed after {len(chunks)} of {size} bytes"
            )
        chunks.extend(chunk)
    return bytes(chunks)


def send_int(sock: socket.socket, value: int) -> None:
    """Send a single 32-bit integer."""
    sock.sendall(_INT.pack(int(value)))


def recv_int(sock: socket.socket) -> int:
    """Receive a single 32-bit integer."""
    (value,) = _INT.unpack(recv_exact(sock, _INT.size))
    return value


def send_packet(sock: socket.socket, packet: Packet) -> None:
    """Send a whole packet."""
    sock.sendall(packet.encode())


def recv_payload(sock: socket.socket) -> bytes:
    """Receive a length-prefixed payload (the part of a packet after its op code)."""
    size = recv_int(sock)
    if size < 0:
        raise ProtocolError(f"negative payload size {size}")
    return recv_exact(sock, size)


def recv_packet(sock: socket.socket) -> Packet:
    """Receive a whole packet; unknown op codes are kept as plain integers."""
    code = recv_int(sock)
    return Packet(_as_op_code(code), recv_payload(sock))


def connect(host: str, port: int | str) -> socket.socket:
    """Open a TCP connection to ``host:port``."""
    return socket.create_connection((host, int(port)))


def start_server(port: int | str) -> socket.socket:
    """Create a listening TCP socket on all interfaces."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        try:
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        except OSError:
            pass
    try:
        server.bind(("", int(port)))
        server.listen(socket.SOMAXCONN)
    except OSError:
        server.close()
        raise
    return server