"""Per-attempt resource allocation."""

from __future__ import annotations

import contextlib
import socket
from dataclasses import dataclass

from forkcat.core.config import ExplorationSettings
from forkcat.core.errors import ConfigurationError
from forkcat.exploration.models import sandbox_name
from forkcat.sandbox.base import SandboxLimits


@dataclass
class AttemptResources:
    sandbox_name: str
    limits: SandboxLimits
    port: int


def _port_free(port: int) -> bool:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Splits a port range into equal, disjoint slices, one per attempt."""

    def __init__(self, start: int, end: int, check_free: bool = True):
        if end < start:
            raise ConfigurationError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self.check_free = check_free

    def slice_for(self, index: int, branches: int) -> range:
        width = (self.end - self.start + 1) // branches
        if width < 1:
            raise ConfigurationError(
                f"Port range {self.start}-{self.end} is too small for "
                f"{branches} attempts"
            )
        if not 1 <= index <= branches:
            raise ValueError(f"Attempt index {index} outside 1..{branches}")
        first = self.start + (index - 1) * width
        return range(first, first + width)

    def allocate(self, index: int, branches: int) -> int:
        """First free port of the attempt's slice (its first port if none)."""
        ports = self.slice_for(index, branches)
        if self.check_free:
            for port in ports:
                if _port_free(port):
                    return port
        return ports.start


def allocate_resources(
    exploration_id: str,
    index: int,
    settings: ExplorationSettings,
    ports: PortAllocator | None = None,
) -> AttemptResources:
    ports = ports or PortAllocator(settings.port_range_start, settings.port_range_end)
    return AttemptResources(
        sandbox_name=sandbox_name(exploration_id, index),
        limits=SandboxLimits(cpus=settings.cpu_limit, memory=settings.memory_limit),
        port=ports.allocate(index, settings.branches),
    )
