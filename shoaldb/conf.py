"""Configuration for a Shoal server."""

from __future__ import annotations

import argparse
import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

DEFAULT_INTERFACE = "127.0.0.1"
DEFAULT_PORT = 12000
ENV_PREFIX = "SHOAL_"
TRACE = 5

_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "ki": 1024,
    "kib": 1024,
    "m": 1000**2,
    "mb": 1000**2,
    "mi": 1024**2,
    "mib": 1024**2,
    "g": 1000**3,
    "gb": 1000**3,
    "gi": 1024**3,
    "gib": 1024**3,
    "t": 1000**4,
    "tb": 1000**4,
    "ti": 1024**4,
    "tib": 1024**4,
    "p": 1000**5,
    "pb": 1000**5,
    "pi": 1024**5,
    "pib": 1024**5,
    "e": 1000**6,
    "eb": 1000**6,
    "ei": 1024**6,
    "eib": 1024**6,
}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")


def parse_bytes(value: Any) -> int:
    """Parse a byte size such as ``512``, ``"10 GB"`` or ``"4GiB"``."""
    if isinstance(value, bool):
        raise ValueError(f"invalid byte size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"byte size cannot be negative: {value}")
        return value
    if not isinstance(value, str):
        raise ValueError(f"invalid byte size: {value!r}")
    match = _SIZE_RE.match(value)
    if match is None:
        raise ValueError(f"invalid byte size: {value!r}")
    number, unit = match.groups()
    multiplier = _UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"unknown byte unit: {unit!r}")
    return int(Decimal(number) * multiplier)


def _to_count(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a non-negative integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        raise ValueError(f"{name} must be a non-negative integer")
    return value


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise ValueError(f"{name} must be a mapping")
    return section


@dataclass
class Resources:
    """Compute resources the server may use."""

    cores: int | None = None
    memory: int = 0

    def cpus(self, online: Iterable[int]) -> list[int]:
        """Pick the cpus to run shards on; cpu 0 is kept for the coordinator."""
        usable = [cpu for cpu in online if cpu != 0]
        if self.cores is not None:
            return usable[: self.cores]
        return usable


@dataclass
class Networking:
    """Where the server listens for clients."""

    interface: str = DEFAULT_INTERFACE
    port: int = DEFAULT_PORT

    def to_addr(self) -> str:
        """Build the address to bind to."""
        print(f"listening on {self.interface}:{self.port}")
        return f"{self.interface}:{self.port}"


class TraceLevel(Enum):
    """The levels at which tracing information is logged."""

    Trace = "Trace"
    Debug = "Debug"
    Info = "Info"
    Warn = "Warn"
    Error = "Error"
    Off = "Off"

    def to_filter(self) -> int:
        """Return the matching :mod:`logging` level."""
        return {
            TraceLevel.Trace: TRACE,
            TraceLevel.Debug: logging.DEBUG,
            TraceLevel.Info: logging.INFO,
            TraceLevel.Warn: logging.WARNING,
            TraceLevel.Error: logging.ERROR,
            TraceLevel.Off: logging.CRITICAL + 1,
        }[self]


@dataclass
class Tracing:
    """Tracing settings."""

    level: TraceLevel = TraceLevel.Info


@dataclass
class Conf:
    """The full server configuration."""

    resources: Resources = field(default_factory=Resources)
    networking: Networking = field(default_factory=Networking)
    tracing: Tracing = field(default_factory=Tracing)
    storage: dict[str, Any] = field(default_factory=dict)


def conf_from_dict(data: Mapping[str, Any]) -> Conf:
    """Build a :class:`Conf` from plain data, applying defaults."""
    if not isinstance(data, Mapping):
        raise ValueError("configuration must be a mapping")
    conf = Conf()
    if "resources" in data:
        section = _section(data, "resources")
        if "memory" not in section:
            raise ValueError("missing field `memory` in resources")
        cores = section.get("cores")
        conf.resources = Resources(
            cores=None if cores is None else _to_count(cores, "cores"),
            memory=parse_bytes(section["memory"]),
        )
    section = _section(data, "networking")
    interface = section.get("interface", DEFAULT_INTERFACE)
    if not isinstance(interface, str):
        raise ValueError("interface must be a string")
    conf.networking = Networking(
        interface=interface,
        port=_to_count(section.get("port", DEFAULT_PORT), "port"),
    )
    section = _section(data, "tracing")
    level = section.get("level", TraceLevel.Info.value)
    try:
        conf.tracing = Tracing(level=TraceLevel(level))
    except ValueError:
        raise ValueError(f"unknown trace level: {level!r}") from None
    conf.storage = dict(_section(data, "storage"))
    return conf


def _merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def _env_overlay(environ: Mapping[str, str]) -> dict[str, Any]:
    overlay: dict[str, Any] = {}
    for name, value in environ.items():
        if not name.upper().startswith(ENV_PREFIX):
            continue
        path = name[len(ENV_PREFIX):].lower().split("__")
        if not all(path):
            continue
        *parents, leaf = path
        node = overlay
        for part in parents:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                break
        else:
            node[leaf] = value
    return overlay


def load_conf(path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> Conf:
    """Load a YAML config file, if present, overlaid with ``SHOAL_`` env vars.

    Nested keys in environment variables are separated by ``__``.
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {}
    file = Path(path)
    if file.is_file():
        try:
            loaded = yaml.safe_load(file.read_text())
        except yaml.YAMLError as error:
            raise ValueError(f"invalid config file {file}: {error}") from error
        if loaded is not None:
            if not isinstance(loaded, Mapping):
                raise ValueError(f"config file {file} must hold a mapping")
            data = dict(loaded)
    return conf_from_dict(_merge(data, _env_overlay(environ)))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse the server's command line."""
    parser = argparse.ArgumentParser(description="A compile time typed database")
    parser.add_argument(
        "-c", "--conf", default="shoal.yml", help="The path to the config file for shoal"
    )
    return parser.parse_args(argv)