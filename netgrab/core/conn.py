"""
Plain TCP connections and the read-what-is-available helper
"""

import asyncio
import logging
from typing import Any, Optional

from netgrab.core.status import NETWORK_ERRORS

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class Connection:
    """One live TCP connection, owned by a single scan"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 timeout: float, domain: str = ""):
        self.reader = reader
        self.writer = writer
        self.timeout = timeout
        self.domain = domain
        self._closed = False

    async def write(self, data: bytes) -> None:
        self.writer.write(data)
        await asyncio.wait_for(self.writer.drain(), timeout=self.timeout)

    async def read_chunk(self, size: int = READ_CHUNK, timeout: Optional[float] = None) -> bytes:
        """Read up to size bytes; b'' means the peer closed the stream"""
        if timeout is None:
            timeout = self.timeout
        return await asyncio.wait_for(self.reader.read(size), timeout=timeout)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout=self.timeout)
        except NETWORK_ERRORS as e:
            logger.debug(f"Error while closing connection: {e}")

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def read_available(conn: Any, limit: int, timeout: float, idle_timeout: float) -> bytes:
    """
    Read whatever the peer sends, up to limit bytes.

    The first read waits up to timeout and a timeout there propagates.
    Once data has arrived, idle_timeout of silence ends the read. A clean
    end-of-stream ends the read too and is not an error.
    """
    data = await conn.read_chunk(min(READ_CHUNK, limit), timeout)
    if not data:
        return b""
    buf = bytearray(data)
    while len(buf) < limit:
        try:
            chunk = await conn.read_chunk(min(READ_CHUNK, limit - len(buf)), idle_timeout)
        except asyncio.TimeoutError:
            break
        if not chunk:
            break
        buf += chunk
    return bytes(buf)
