import dataclasses
import logging
import re
import socket
import struct
import threading

import pytest

from memoria.config import Algoritmo, Esquema, MemoriaConfig
from memoria.processes import create_process
from memoria.protocol import OpCode, Packet, recv_int, recv_packet, send_int, send_packet
from memoria.server import MISSING_CONFIG_PATH, MemoryServer, main


@pytest.fixture
def config(tmp_path):
    (tmp_path / "prog").write_text("SET AX 1\nSUM AX BX\nEXIT\n", encoding="utf-8")
    return MemoriaConfig(
        listen_port="0",
        filesystem_ip="127.0.0.1",
        filesystem_port="1",
        memory_size=256,
        instructions_path=str(tmp_path),
        response_delay=0,
        scheme=Esquema.DINAMICAS,
        algorithm=Algoritmo.FIRST_FIT,
        partitions=None,
        log_level=logging.DEBUG,
    )


@pytest.fixture
def server(config):
    return MemoryServer(config)


def _start(server):
    client, served = socket.socketpair()
    client.settimeout(5)
    worker = threading.Thread(target=server.handle_client, args=(served,), daemon=True)
    worker.start()
    return client, worker


def _kernel(server, op, payload):
    client, worker = _start(server)
    try:
        send_int(client, OpCode.HANDSHAKE_KERNEL)
        assert recv_int(client) == OpCode.HANDSHAKE_ACCEPTED
        send_packet(client, Packet(op, payload))
        return recv_int(client)
    finally:
        worker.join(5)
        client.close()


@pytest.fixture
def cpu(server):
    client, worker = _start(server)
    send_int(client, OpCode.HANDSHAKE_CPU)
    assert recv_int(client) == OpCode.HANDSHAKE_ACCEPTED
    yield client
    client.close()
    worker.join(5)


def test_create_process_allocates_and_creates_main_thread(server):
    status = _kernel(server, OpCode.CREATE_PROCESS, struct.pack("<II", 1, 64) + b"prog")
    assert status == OpCode.OK
    assert (1, 0) in server.threads
    assert server.memory.partition_size(1) == 64
    assert server.threads.instruction(1, 0, 0) == "SET AX 1"


def test_create_process_too_large_is_an_error(server):
    status = _kernel(server, OpCode.CREATE_PROCESS, struct.pack("<II", 1, 1000) + b"prog")
    assert status == OpCode.ERROR
    assert (1, 0) not in server.threads
    assert server.memory.partition_size(1) == 0


def test_end_process_frees_memory_and_threads(server):
    assert create_process(server.memory, server.threads, 5, 32, ["EXIT"])
    server.threads.create(5, 1, ["EXIT"])
    status = _kernel(server, OpCode.END_PROCESS, struct.pack("<i", 5))
    assert status == OpCode.OK
    assert server.memory.partition_size(5) == 0
    assert len(server.threads) == 0
    assert server.memory.describe() == "{[256;-1]}"


def test_create_and_end_thread(server):
    status = _kernel(server, OpCode.CREATE_THREAD, struct.pack("<II", 2, 3) + b"prog")
    assert status == OpCode.OK
    assert server.threads.instruction(2, 3, 2) == "EXIT"
    status = _kernel(server, OpCode.END_THREAD, struct.pack("<II", 2, 3))
    assert status == OpCode.OK
    assert (2, 3) not in server.threads


def test_unknown_kernel_operation_closes_without_answer(server):
    client, worker = _start(server)
    send_int(client, OpCode.HANDSHAKE_KERNEL)
    assert recv_int(client) == OpCode.HANDSHAKE_ACCEPTED
    send_int(client, OpCode.READ_MEM)
    assert client.recv(4) == b""
    worker.join(5)
    client.close()


def test_unknown_client_is_dropped(server):
    client, worker = _start(server)
    send_int(client, OpCode.OK)
    assert client.recv(4) == b""
    worker.join(5)
    client.close()


def test_cpu_context_includes_partition_bounds(server, cpu):
    assert create_process(server.memory, server.threads, 2, 32, ["EXIT"])
    assert create_process(server.memory, server.threads, 1, 64, ["EXIT"])
    send_packet(cpu, Packet(OpCode.GET_CONTEXTO_EJECUCION, struct.pack("<II", 1, 0)))
    packet = recv_packet(cpu)
    assert packet.op_code == OpCode.OK
    values = struct.unpack("<11I", packet.payload)
    assert values[:9] == (0,) * 9
    assert values[9:] == server.memory.partition_bounds(1)


def test_cpu_update_then_get_context(server, cpu):
    assert create_process(server.memory, server.threads, 1, 16, ["EXIT"])
    registers = tuple(range(1, 10))
    payload = struct.pack("<11I", 1, 0, *registers)
    send_packet(cpu, Packet(OpCode.UPD_CONTEXTO_EJECUCION, payload))
    assert recv_int(cpu) == OpCode.OK
    send_packet(cpu, Packet(OpCode.GET_CONTEXTO_EJECUCION, struct.pack("<II", 1, 0)))
    values = struct.unpack("<11I", recv_packet(cpu).payload)
    assert values[:9] == registers


def test_cpu_instructions(server, cpu):
    assert create_process(server.memory, server.threads, 1, 16, ["SET AX 1", "EXIT"])
    send_packet(cpu, Packet(OpCode.GET_INSTRUCCION, struct.pack("<III", 1, 0, 1)))
    packet = recv_packet(cpu)
    assert packet.op_code == OpCode.OK
    assert packet.payload == b"EXIT"
    send_packet(cpu, Packet(OpCode.GET_INSTRUCCION, struct.pack("<III", 1, 0, 2)))
    assert recv_packet(cpu).payload == b"FIN"
    send_packet(cpu, Packet(OpCode.GET_INSTRUCCION, struct.pack("<III", 9, 0, 0)))
    assert recv_int(cpu) == OpCode.ERROR


def test_cpu_write_then_read(server, cpu):
    payload = struct.pack("<III", 1, 0, 8) + b"\x01\x02\x03\x04"
    send_packet(cpu, Packet(OpCode.WRITE_MEM, payload))
    assert recv_int(cpu) == OpCode.OK
    send_packet(cpu, Packet(OpCode.READ_MEM, struct.pack("<III", 1, 0, 8)))
    packet = recv_packet(cpu)
    assert packet.op_code == OpCode.OK
    assert packet.payload == b"\x01\x02\x03\x04"


def test_cpu_read_out_of_range_is_an_error(server, cpu):
    send_packet(cpu, Packet(OpCode.READ_MEM, struct.pack("<III", 1, 0, 10_000)))
    assert recv_int(cpu) == OpCode.ERROR


def test_cpu_dropped_after_repeated_unknown_operations(server, cpu):
    for _ in range(3):
        send_int(cpu, OpCode.CREATE_PROCESS)
    assert cpu.recv(4) == b""


def test_second_cpu_is_denied(server):
    server.cpu_connected = True
    client, worker = _start(server)
    send_int(client, OpCode.HANDSHAKE_CPU)
    assert recv_int(client) == OpCode.HANDSHAKE_DENIED
    assert client.recv(4) == b""
    worker.join(5)
    client.close()


def _fake_filesystem(answer):
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(5)
    received = {}

    def run():
        conn, _ = listener.accept()
        with conn:
            conn.settimeout(5)
            received["handshake"] = recv_int(conn)
            send_int(conn, OpCode.HANDSHAKE_ACCEPTED)
            received["packet"] = recv_packet(conn)
            send_int(conn, answer)
        listener.close()

    worker = threading.Thread(target=run, daemon=True)
    worker.start()
    return listener.getsockname()[1], worker, received


@pytest.mark.parametrize("answer", [OpCode.OK, OpCode.ERROR])
def test_memory_dump_relays_filesystem_answer(config, answer):
    port, fs_worker, received = _fake_filesystem(answer)
    server = MemoryServer(dataclasses.replace(config, filesystem_port=str(port)))
    assert create_process(server.memory, server.threads, 3, 8, ["EXIT"])
    base, _ = server.memory.partition_bounds(3)
    server.memory.write(base, b"abcd")

    status = _kernel(server, OpCode.MEMORY_DUMP, struct.pack("<II", 3, 0))
    fs_worker.join(5)

    assert status == answer
    assert received["handshake"] == OpCode.HANDSHAKE_MEMORIA
    packet = received["packet"]
    assert packet.op_code == OpCode.WRITE_FILE
    (name_len,) = struct.unpack_from("<Q", packet.payload)
    name = packet.payload[8 : 8 + name_len].decode()
    (content_len,) = struct.unpack_from("<Q", packet.payload, 8 + name_len)
    content = packet.payload[16 + name_len :]
    assert re.fullmatch(r"3-0-\d{2}:\d{2}:\d{2}:\d{3}\.dmp", name)
    assert content_len == len(content)
    assert content == server.memory.content_of(3)


def test_memory_dump_of_unknown_process_is_an_error(server):
    assert _kernel(server, OpCode.MEMORY_DUMP, struct.pack("<II", 42, 0)) == OpCode.ERROR


def test_serve_forever_accepts_clients(server):
    worker = threading.Thread(target=server.serve_forever, daemon=True)
    worker.start()
    assert server.ready.wait(5)
    try:
        with socket.create_connection(("127.0.0.1", server.address[1]), timeout=5) as client:
            send_int(client, OpCode.HANDSHAKE_KERNEL)
            assert recv_int(client) == OpCode.HANDSHAKE_ACCEPTED
            send_packet(client, Packet(OpCode.CREATE_THREAD, struct.pack("<II", 7, 1) + b"prog"))
            assert recv_int(client) == OpCode.OK
        assert (7, 1) in server.threads
    finally:
        server.shutdown()
        worker.join(5)
    assert not worker.is_alive()


def test_main_without_arguments(capsys):
    assert main([]) == 1
    assert MISSING_CONFIG_PATH in capsys.readouterr().out


def test_main_with_missing_config(tmp_path):
    assert main([str(tmp_path / "missing.config")]) == 1