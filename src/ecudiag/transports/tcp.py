# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import socket
from typing import Self

from ecudiag.log import get_logger
from ecudiag.transports.base import (
    BaseTransport,
    ConnectionRefused,
    ConnectionTimeout,
    NotConnected,
    ReceiveTimeout,
    TargetURI,
    TransportError,
)
from ecudiag.utils import hexdump

logger = get_logger(__name__)

# Messages shorter than this are hexdumped at trace level.
HEXDUMP_THRESHOLD = 256


def _log_exchange(direction: str, data: bytes, tags: list[str]) -> None:
    logger.debug(f"{direction} {len(data)} bytes", extra={"tags": tags})
    if len(data) < HEXDUMP_THRESHOLD:
        for line in hexdump(data):
            logger.trace(line, extra={"tags": tags})


class TCPTransport(BaseTransport, scheme="tcp"):
    def __init__(
        self,
        target: TargetURI,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        super().__init__(target)
        self.reader = reader
        self.writer = writer

    @classmethod
    async def open(
        cls, host: str, port: int, timeout: float | None = None
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except TimeoutError as e:
            logger.error(f"Connection to {host}:{port} timed out")
            raise ConnectionTimeout(f"connection to {host}:{port} timed out") from e
        except (OSError, socket.gaierror) as e:
            logger.error(f"Connection to {host}:{port} failed: {e!r}")
            raise ConnectionRefused(f"connection to {host}:{port} failed: {e}") from e

    @classmethod
    async def connect(cls, target: str | TargetURI, timeout: float | None = None) -> Self:
        t = target if isinstance(target, TargetURI) else TargetURI(target)
        cls.check_scheme(t)

        if t.hostname is None or t.port is None:
            raise ValueError("no hostname or port specified")

        reader, writer = await cls.open(t.hostname, t.port, timeout)
        logger.info(f"Connected to {t.location}")
        return cls(t, reader, writer)

    async def close(self) -> None:
        if self.is_closed:
            return
        self.is_closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except ConnectionError as e:
            logger.debug(f"Exception while waiting for the writer to close: {e!r}")
        logger.info("Connection closed")

    async def write(
        self,
        data: bytes,
        timeout: float | None = None,
        tags: list[str] | None = None,
    ) -> int:
        if self.is_closed:
            raise NotConnected()

        t = tags + ["write"] if tags is not None else ["write"]
        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), timeout)
        except TimeoutError as e:
            raise TransportError("timeout while sending") from e
        except OSError as e:
            logger.error(f"Send failed: {e!r}")
            raise TransportError(f"send failed: {e}") from e

        _log_exchange("Sent", data, t)
        return len(data)

    async def read_exactly(
        self,
        n: int,
        timeout: float | None = None,
        tags: list[str] | None = None,
    ) -> bytes:
        if self.is_closed:
            raise NotConnected()

        try:
            data = await asyncio.wait_for(self.reader.readexactly(n), timeout)
        except TimeoutError as e:
            logger.debug("Receive timeout")
            raise ReceiveTimeout(f"{n} bytes not received within timeout") from e
        except asyncio.IncompleteReadError as e:
            logger.info(f"Connection closed by peer after {len(e.partial)} of {n} bytes")
            await self.close()
            raise TransportError("connection closed by peer") from e
        except OSError as e:
            logger.error(f"Receive failed: {e!r}")
            raise TransportError(f"receive failed: {e}") from e

        t = tags + ["read"] if tags is not None else ["read"]
        _log_exchange("Received", data, t)
        return data
