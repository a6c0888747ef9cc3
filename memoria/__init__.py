"""Memory server for a teaching operating-system emulator: partitioned user memory, thread contexts and a TCP protocol."""

__version__ = "0.1.0"