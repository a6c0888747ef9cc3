"""The memory server: answers the kernel and the CPU over TCP."""

from __future__ import annotations

import logging
import socket
import sys
import threading
import time
from contextlib import suppress

from memoria.config import MEMORIA, ConfigError, MemoriaConfig, load_config
from memoria.logs import (
    LogCondition,
    create_logger,
    log_context,
    log_instruction,
    log_kernel_connected,
    log_memory_dump,
    log_process,
    log_thread,
    log_user_memory,
)
from memoria.memory import InvalidLayoutError, MemoryManager, dump_filename
from memoria.messages import (
    BYTES_PER_OPERATION,
    ExecutionContext,
    connect_filesystem,
    decode_context_update,
    decode_id,
    decode_instruction_request,
    decode_pid_tid,
    decode_process,
    decode_read_request,
    decode_thread,
    decode_write_request,
    send_context,
    send_dump_request,
    send_instruction,
    send_read_response,
    send_status,
)
from memoria.processes import create_process, end_process
from memoria.protocol import (
    OpCode,
    ProtocolError,
    recv_int,
    recv_payload,
    send_int,
    start_server,
)
from memoria.threads import ThreadTable

MAX_CPU_FAILURES = 3
LOG_FILE = "memoria.log"
MISSING_CONFIG_PATH = "Debe especificar el path del archivo de configuracion."

_log = logging.getLogger(MEMORIA)


def _op_name(code: int) -> str:
    try:
        return OpCode(code).name
    except ValueError:
        return str(code)


class MemoryServer:
    """Holds user memory and thread contexts and serves kernel and CPU clients."""

    def __init__(
        self,
        config: MemoriaConfig,
        memory: MemoryManager | None = None,
        threads: ThreadTable | None = None,
    ) -> None:
        self.config = config
        self.memory = (
            memory
            if memory is not None
            else MemoryManager(
                config.memory_size, config.scheme, config.algorithm, config.partitions
            )
        )
        self.threads = threads if threads is not None else ThreadTable()
        self.cpu_connected = False
        self.address: tuple[str, int] | None = None
        self.ready = threading.Event()
        self._cpu_lock = threading.Lock()
        self._stop = threading.Event()

    def _delay(self) -> None:
        time.sleep(self.config.response_delay / 1000)

    def serve_forever(self) -> None:
        """Accept clients until shutdown() is called, one thread per client."""
        server = start_server(self.config.listen_port)
        server.settimeout(0.2)
        self.address = server.getsockname()
        _log.debug("Servidor escuchando en el puerto: %s", self.address[1])
        self.ready.set()
        try:
            while not self._stop.is_set():
                try:
                    client, _ = server.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if self._stop.is_set():
                        break
                    _log.error("Error al esperar cliente")
                    continue
                client.settimeout(None)
                worker = threading.Thread(
                    target=self.handle_client, args=(client,), daemon=True
                )
                try:
                    worker.start()
                except RuntimeError:
                    _log.error("Error al crear el hilo para el cliente")
                    client.close()
        finally:
            server.close()
            self.ready.clear()
            _log.info("Servidor finalizado")

    def shutdown(self) -> None:
        """Ask serve_forever() to stop."""
        self._stop.set()

    def handle_client(self, sock: socket.socket) -> None:
        """Identify a client by its handshake and serve it, then close the socket."""
        try:
            client_id = recv_int(sock)
            if client_id == OpCode.HANDSHAKE_KERNEL:
                log_kernel_connected(sock.fileno())
                send_int(sock, OpCode.HANDSHAKE_ACCEPTED)
                self.handle_kernel(sock)
            elif client_id == OpCode.HANDSHAKE_CPU:
                _log.debug("Se conecto CPU")
                if self.validate_cpu(sock):
                    try:
                        self.handle_cpu(sock)
                    finally:
                        with self._cpu_lock:
                            self.cpu_connected = False
            else:
                _log.warning(
                    "No se pudo identificar al cliente; op_code: %s", client_id
                )
        except ProtocolError as error:
            _log.debug("Conexion terminada: %s", error)
        except OSError as error:
            _log.error("Error de comunicacion con el cliente: %s", error)
        finally:
            with suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
            sock.close()

    def handle_kernel(self, sock: socket.socket) -> None:
        """Serve one kernel request."""
        operation = recv_int(sock)
        if operation == OpCode.CREATE_PROCESS:
            process = decode_process(recv_payload(sock), self.config.instructions_path)
            log_process(LogCondition.CREACION, process.pid, process.size)
            created = create_process(
                self.memory, self.threads, process.pid, process.size, process.instructions
            )
            send_status(sock, OpCode.OK if created else OpCode.ERROR)
        elif operation == OpCode.END_PROCESS:
            pid = decode_id(recv_payload(sock))
            log_process(LogCondition.DESTRUCCION, pid, self.memory.partition_size(pid))
            end_process(self.memory, self.threads, pid)
            send_status(sock, OpCode.OK)
        elif operation == OpCode.CREATE_THREAD:
            thread = decode_thread(recv_payload(sock), self.config.instructions_path)
            log_thread(LogCondition.CREACION, thread.pid, thread.tid)
            self.threads.create(thread.pid, thread.tid, thread.instructions)
            send_status(sock, OpCode.OK)
        elif operation == OpCode.END_THREAD:
            request = decode_pid_tid(recv_payload(sock))
            log_thread(LogCondition.DESTRUCCION, request.pid, request.tid)
            self.threads.end(request.pid, request.tid)
            send_status(sock, OpCode.OK)
        elif operation == OpCode.MEMORY_DUMP:
            request = decode_pid_tid(recv_payload(sock))
            log_memory_dump(request.pid, request.tid)
            self.memory_dump(request.pid, request.tid, sock)
        else:
            _log.warning(
                "Operación no manejable en kernel. op_code: %s", _op_name(operation)
            )

    def handle_cpu(self, sock: socket.socket) -> None:
        """Serve CPU requests until the connection ends or it keeps misbehaving."""
        failures = 0
        while True:
            if failures >= MAX_CPU_FAILURES:
                _log.warning(
                    "Es probable que el servidor de CPU se haya cerrado. "
                    "Se aborta el manejo de cliente"
                )
                raise ProtocolError("too many unknown operations from the CPU")
            operation = recv_int(sock)
            if operation == OpCode.GET_CONTEXTO_EJECUCION:
                request = decode_pid_tid(recv_payload(sock))
                log_context(LogCondition.SOLICITADO, request.pid, request.tid)
                context = self.threads.context(request.pid, request.tid)
                if context is None:
                    context = ExecutionContext()
                bounds = self.memory.partition_bounds(request.pid)
                if bounds is not None:
                    context.base, context.limite = bounds
                self._delay()
                send_context(sock, OpCode.OK, context)
            elif operation == OpCode.UPD_CONTEXTO_EJECUCION:
                update = decode_context_update(recv_payload(sock))
                log_context(LogCondition.ACTUALIZADO, update.pid, update.tid)
                self.threads.update(update)
                self._delay()
                send_status(sock, OpCode.OK)
            elif operation == OpCode.GET_INSTRUCCION:
                request = decode_instruction_request(recv_payload(sock))
                instruction = self.threads.instruction(
                    request.pid, request.tid, request.pc
                )
                log_instruction(request.pid, request.tid, instruction)
                self._delay()
                if "ERROR" in instruction:
                    send_status(sock, OpCode.ERROR)
                else:
                    send_instruction(sock, instruction)
            elif operation == OpCode.READ_MEM:
                request = decode_read_request(recv_payload(sock))
                log_user_memory(
                    LogCondition.LECTURA,
                    request.pid,
                    request.tid,
                    request.address,
                    BYTES_PER_OPERATION,
                )
                try:
                    data = self.memory.read(request.address)
                except IndexError as error:
                    _log.error("%s", error)
                    self._delay()
                    send_status(sock, OpCode.ERROR)
                    continue
                self._delay()
                send_read_response(sock, data)
            elif operation == OpCode.WRITE_MEM:
                request = decode_write_request(recv_payload(sock))
                log_user_memory(
                    LogCondition.ESCRITURA,
                    request.pid,
                    request.tid,
                    request.address,
                    BYTES_PER_OPERATION,
                )
                try:
                    self.memory.write(request.address, request.data)
                except IndexError as error:
                    _log.error("%s", error)
                    self._delay()
                    send_status(sock, OpCode.ERROR)
                    continue
                self._delay()
                send_status(sock, OpCode.OK)
            else:
                _log.warning(
                    "Operación no manejable en CPU. op_code: %s", _op_name(operation)
                )
                failures += 1

    def memory_dump(self, pid: int, tid: int, sock: socket.socket) -> None:
        """Send a process's partition to the filesystem and relay its answer."""
        filename = dump_filename(pid, tid)
        content = self.memory.content_of(pid)
        if content is None:
            send_status(sock, OpCode.ERROR)
            return
        try:
            filesystem = connect_filesystem(self.config)
        except OSError as error:
            _log.error("No se pudo conectar con el servidor de FILESYSTEM: %s", error)
            send_status(sock, OpCode.ERROR)
            return
        with filesystem:
            send_dump_request(filesystem, filename, content)
            status = recv_int(filesystem)
        if status == OpCode.ERROR:
            _log.warning("No se pudo crear el archivo para el PID %d", pid)
        send_status(sock, status)

    def validate_cpu(self, sock: socket.socket) -> bool:
        """Accept the CPU unless one is already connected."""
        with self._cpu_lock:
            if self.cpu_connected:
                send_int(sock, OpCode.HANDSHAKE_DENIED)
                return False
            self.cpu_connected = True
        send_int(sock, OpCode.HANDSHAKE_ACCEPTED)
        return True


def main(argv: list[str] | None = None) -> int:
    """Run the memory server with the configuration file given as first argument."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print(MISSING_CONFIG_PATH)
        return 1
    try:
        config = load_config(args[0])
    except ConfigError as error:
        print(error, file=sys.stderr)
        return 1
    create_logger(LOG_FILE, MEMORIA, config.log_level)
    try:
        server = MemoryServer(config)
    except (InvalidLayoutError, ValueError) as error:
        _log.error("Error en inicializacion de memoria: %s", error)
        return 1
    try:
        server.serve_forever()
    except OSError as error:
        _log.error("Error al iniciar el servidor: %s", error)
        return 1
    except KeyboardInterrupt:
        server.shutdown()
    return 0