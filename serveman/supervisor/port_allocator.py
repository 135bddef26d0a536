"""Deterministic port allocation over a configured inclusive range."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Collection

from serveman.contracts import DEFAULT_HOSTNAME, PORT_MAX, PORT_MIN
from serveman.errors import NoPortAvailableError

logger = logging.getLogger("serveman.supervisor.port_allocator")


def is_port_available(port: int, host: str = DEFAULT_HOSTNAME) -> bool:
    """Return True when a transient TCP listener can bind the port."""
    try:
        family, _, _, _, sockaddr = socket.getaddrinfo(
            host or None,
            port,
            type=socket.SOCK_STREAM,
            flags=socket.AI_PASSIVE,
        )[0]
    except socket.gaierror as exc:
        logger.warning("Cannot resolve bind host %r: %s", host, exc)
        return False
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(sockaddr)
        except OSError:
            return False
    return True


class PortAllocator:
    """Scan a port range in ascending order for the first free port."""

    def __init__(
        self,
        port_min: int = PORT_MIN,
        port_max: int = PORT_MAX,
        host: str = DEFAULT_HOSTNAME,
    ) -> None:
        if not 1 <= port_min <= port_max <= 65535:
            raise ValueError(f"invalid port range: {port_min}-{port_max}")
        self.port_min = port_min
        self.port_max = port_max
        self.host = host

    async def allocate(self, claimed: Collection[int] = ()) -> int:
        """
        Return the first port that is neither claimed in memory nor bound by
        another process. Raises NoPortAvailableError when the range is spent.
        """
        for port in range(self.port_min, self.port_max + 1):
            if port in claimed:
                continue
            if await asyncio.to_thread(is_port_available, port, self.host):
                logger.debug("Allocated port %s", port)
                return port
            logger.debug("Port %s is bound by another process", port)
        raise NoPortAvailableError(self.port_min, self.port_max)
