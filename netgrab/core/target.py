"""
Scan targets
A target is one remote endpoint; it knows how to open plain and TLS
connections to itself
"""

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Union

from netgrab.core.conn import Connection
from netgrab.core.module import BaseFlags
from netgrab.core.status import (
    ConnectFailedError, ConnectionTimeoutError, InvalidServerNameError, NETWORK_ERRORS, TLSHandshakeError
)
from netgrab.core.tls import TLSConnection, TLSFlags

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class ScanTarget:
    """One remote endpoint; shared read-only between scans"""
    ip: Optional[IPAddress] = None
    domain: str = ""
    tag: str = ""
    port: Optional[int] = None

    def host(self) -> str:
        return str(self.ip) if self.ip is not None else self.domain

    def __str__(self) -> str:
        if self.ip is not None and self.domain:
            return f"{self.ip} ({self.domain})"
        return self.host()

    async def open(self, flags: BaseFlags) -> Connection:
        """Open a TCP connection; the target's own port wins over flags.port"""
        port = self.port if self.port is not None else flags.port
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host(), port),
                timeout=flags.timeout
            )
        except asyncio.TimeoutError:
            logger.debug(f"Connect to {self.host()}:{port} timed out after {flags.timeout}s")
            raise ConnectionTimeoutError(f"timed out connecting to {self.host()}:{port}")
        except ConnectionRefusedError:
            raise
        except OSError as e:
            # Resolution failures, unreachable hosts and networks
            logger.debug(f"Connect to {self.host()}:{port} failed: {e}")
            raise ConnectFailedError(f"could not connect to {self.host()}:{port}: {e}") from e
        return Connection(reader, writer, timeout=flags.timeout, domain=self.domain)

    async def open_tls(self, flags: BaseFlags, tls_flags: TLSFlags) -> TLSConnection:
        """
        Open a connection and complete a TLS handshake over it.

        On handshake failure the connection is closed and TLSHandshakeError
        is raised carrying the partial handshake log. A server name that
        cannot be sent raises InvalidServerNameError, also after closing.
        """
        conn = await self.open(flags)
        try:
            tls_conn = tls_flags.get_tls_connection(conn)
        except InvalidServerNameError:
            await conn.close()
            raise
        try:
            await tls_conn.handshake()
        except NETWORK_ERRORS as e:
            await tls_conn.close()
            raise TLSHandshakeError(e, tls_conn.get_log()) from e
        return tls_conn


def _parse_port(value: str) -> Optional[int]:
    if not value:
        return None
    port = int(value)
    if not 0 < port <= 65535:
        raise ValueError(f"port {port} out of range")
    return port


def parse_target_line(line: str) -> Iterator[ScanTarget]:
    """
    Parse one input line of the form "ip, domain, tag, port".

    Only the first column is required. A first column that is not an
    address or network is taken as the domain. Networks expand to their
    hosts.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return
    fields = [f.strip() for f in line.split(",")]
    fields += [""] * (4 - len(fields))
    first, domain, tag, port_field = fields[:4]
    port = _parse_port(port_field)

    if not first:
        if not domain:
            raise ValueError(f"target line has neither address nor domain: {line!r}")
        yield ScanTarget(domain=domain, tag=tag, port=port)
        return

    try:
        network = ipaddress.ip_network(first, strict=False)
    except ValueError:
        # Not an address: a bare hostname in the first column
        yield ScanTarget(domain=domain or first, tag=tag, port=port)
        return

    if network.num_addresses == 1:
        yield ScanTarget(ip=network.network_address, domain=domain, tag=tag, port=port)
        return
    for host in network.hosts():
        yield ScanTarget(ip=host, domain=domain, tag=tag, port=port)


def iter_targets(lines: Iterable[str]) -> Iterator[ScanTarget]:
    for line in lines:
        yield from parse_target_line(line)
