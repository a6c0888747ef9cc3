"""Configuration of the memory module."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

MEMORIA = "Memoria"

P_PUERTO_ESCUCHA = "PUERTO_ESCUCHA"
P_IP_FILESYSTEM = "IP_FILESYSTEM"
P_PUERTO_FILESYSTEM = "PUERTO_FILESYSTEM"
P_TAM_MEMORIA = "TAM_MEMORIA"
P_ESQUEMA = "ESQUEMA"
P_ALGORITMO_BUSQUEDA = "ALGORITMO_BUSQUEDA"
P_PARTICIONES = "PARTICIONES"
P_LOG_LEVEL = "LOG_LEVEL"
P_PATH_INSTRUCCIONES = "PATH_INSTRUCCIONES"
P_RETARDO_RESPUESTA = "RETARDO_RESPUESTA"

ERROR_FILE_NOT_FOUND = (
    "No se pudo encontrar el archivo de configuracion en la ruta {} para el modulo {}."
)

TRACE = 5

_LOG_LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class ConfigError(ValueError):
    """The configuration is missing or invalid."""


class Esquema(Enum):
    """Partitioning scheme."""

    FIJAS = "FIJAS"
    DINAMICAS = "DINAMICAS"


class Algoritmo(Enum):
    """Free partition search algorithm."""

    FIRST_FIT = "FIRST"
    BEST_FIT = "BEST"
    WORST_FIT = "WORST"


@dataclass(frozen=True)
class MemoriaConfig:
    """Settings read from the memory module's configuration file."""

    listen_port: str
    filesystem_ip: str
    filesystem_port: str
    memory_size: int
    instructions_path: str
    response_delay: int
    scheme: Esquema
    algorithm: Algoritmo
    partitions: tuple[int, ...] | None
    log_level: int


def _lookup(enum_cls, name: str):
    wanted = name.strip().upper()
    for member in enum_cls:
        if member.value == wanted:
            return member
    raise ConfigError(f"invalid {enum_cls.__name__.lower()}: {name!r}")


def esquema_from_string(name: str) -> Esquema:
    """Parse a partitioning scheme, ignoring case."""
    return _lookup(Esquema, name)


def algoritmo_from_string(name: str) -> Algoritmo:
    """Parse a search algorithm name (FIRST, BEST, WORST), ignoring case."""
    return _lookup(Algoritmo, name)


def log_level_from_string(name: str) -> int:
    """Map a log level name to a logging level number."""
    try:
        return _LOG_LEVELS[name.strip().upper()]
    except KeyError:
        raise ConfigError(f"invalid log level: {name!r}") from None


def parse_partitions(value: str | None) -> tuple[int, ...] | None:
    """Parse a ``[a,b,c]`` list of partition sizes; empty or absent gives None."""
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.startswith("["):
        text = text[1:]
    if text.endswith("]"):
        text = text[:-1]
    items = [item.strip() for item in text.split(",")]
    if items == [""]:
        return ()
    try:
        return tuple(int(item) for item in items)
    except ValueError:
        raise ConfigError(f"invalid partition list: {value!r}") from None


def _parse_properties(text: str) -> dict[str, str]:
    properties: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        properties[key.strip()] = value.strip()
    return properties


def _require(properties: dict[str, str], key: str) -> str:
    try:
        return properties[key]
    except KeyError:
        raise ConfigError(f"missing configuration key: {key}") from None


def _require_int(properties: dict[str, str], key: str) -> int:
    value = _require(properties, key)
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from None


def parse_config_text(text: str) -> MemoriaConfig:
    """Build a configuration from ``KEY=VALUE`` lines."""
    properties = _parse_properties(text)
    return MemoriaConfig(
        listen_port=_require(properties, P_PUERTO_ESCUCHA),
        filesystem_ip=_require(properties, P_IP_FILESYSTEM),
        filesystem_port=_require(properties, P_PUERTO_FILESYSTEM),
        memory_size=_require_int(properties, P_TAM_MEMORIA),
        instructions_path=_require(properties, P_PATH_INSTRUCCIONES),
        response_delay=_require_int(properties, P_RETARDO_RESPUESTA),
        scheme=esquema_from_string(_require(properties, P_ESQUEMA)),
        algorithm=algoritmo_from_string(_require(properties, P_ALGORITMO_BUSQUEDA)),
        partitions=parse_partitions(properties.get(P_PARTICIONES)),
        log_level=log_level_from_string(_require(properties, P_LOG_LEVEL)),
    )


def load_config(path: str | Path) -> MemoriaConfig:
    """Read and parse a configuration file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError:
        raise ConfigError(ERROR_FILE_NOT_FOUND.format(path, MEMORIA)) from None
    return parse_config_text(text)