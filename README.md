# memoria

A memory server for a small teaching operating-system emulator. It keeps a
simulated user memory split into partitions. It stores each thread's
register context and pseudocode instructions. It answers requests from a
kernel and a CPU over a binary TCP protocol. For a memory dump, it sends the
contents of a process's partition to a filesystem server.

## Features

- Fixed partitions (`FIJAS`) or dynamic partitions (`DINAMICAS`). In the
  dynamic scheme, adjacent free partitions are merged when a process ends.
- First-fit, best-fit and worst-fit placement (`FIRST`, `BEST`, `WORST`).
- Per-thread register contexts (AX–HX, PC). When the CPU requests a context,
  base and limit are filled in from the partition of the owning process.
- Instructions are loaded line by line from pseudocode files under a
  configured directory.
- Four-byte reads and writes of user memory. An address outside the memory
  gets an `ERROR` status in reply.
- Only one CPU may be connected at a time. A second CPU is refused with
  `HANDSHAKE_DENIED`.

## Installation

```
pip install .
```

## Running

The server takes the path of its configuration file:

```
memoria memoria.config
```

A configuration file holds `KEY=VALUE` lines. Blank lines and lines that
start with `#` are ignored.

```
PUERTO_ESCUCHA=8002
IP_FILESYSTEM=127.0.0.1
PUERTO_FILESYSTEM=8003
TAM_MEMORIA=1024
PATH_INSTRUCCIONES=/home/user/scripts
RETARDO_RESPUESTA=100
ESQUEMA=FIJAS
ALGORITMO_BUSQUEDA=FIRST
PARTICIONES=[512,16,32,16,256,64,128]
LOG_LEVEL=TRACE
```

- `PARTICIONES` is only needed with the fixed scheme.
- `RETARDO_RESPUESTA` is a delay in milliseconds before each answer to the CPU.
- `LOG_LEVEL` accepts `TRACE`, `DEBUG`, `INFO`, `WARNING` or `ERROR`.

Logs are written to `memoria.log` in the working directory and to standard
output.

## Using it as a library

```python
from memoria.config import load_config
from memoria.memory import MemoryManager
from memoria.threads import ThreadTable
from memoria.processes import create_process, end_process

config = load_config("memoria.config")
memory = MemoryManager(
    config.memory_size, config.scheme, config.algorithm, config.partitions
)
threads = ThreadTable()

if create_process(memory, threads, pid=1, size=64, instructions=["SET AX 1", "PROCESS_EXIT"]):
    print(threads.instruction(1, 0, 0))   # "SET AX 1"
    print(threads.instruction(1, 0, 2))   # "FIN"
    print(memory.describe())              # e.g. "{[512;1][16;-1]...}"
end_process(memory, threads, 1)
```

The modules:

- `memoria.protocol`: op codes, `Packet`, and socket helpers (`send_int`,
  `recv_int`, `recv_packet`, `start_server`, ...).
- `memoria.messages`: decoding of kernel and CPU requests, and encoding of
  the replies and of dump requests to the filesystem.
- `memoria.memory`: `MemoryManager` and `dump_filename`.
- `memoria.threads`: `ThreadTable`.
- `memoria.processes`: `create_process` and `end_process`.
- `memoria.server`: `MemoryServer` combines the modules above behind the
  network protocol. It provides `serve_forever()` and `shutdown()`, and
  `main()` is the entry point of the `memoria` command.

## What it does not do

This package is only the memory server. It contains no kernel, no CPU and
no filesystem. For memory dumps, a filesystem server must be listening at
`IP_FILESYSTEM:PUERTO_FILESYSTEM`. If it cannot be reached, the kernel's
dump request is answered with `ERROR`.

## Tests

```
pip install .[test]
pytest
```