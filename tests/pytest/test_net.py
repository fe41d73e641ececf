# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

import asyncio
import socket

import pytest

from ecudiag import net
from ecudiag.net import join_host_port, ping_host


def test_join_host_port() -> None:
    assert join_host_port("127.0.0.1", 13400) == "127.0.0.1:13400"
    assert join_host_port("::1", 13400) == "[::1]:13400"


@pytest.mark.asyncio
async def test_ping_unresolvable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def resolve(host: str) -> str:
        raise socket.gaierror("Name or service not known")

    monkeypatch.setattr(net, "resolve_host", resolve)

    result = await ping_host("ecu.invalid")

    assert not result.success
    assert result.host == "ecu.invalid"
    assert result.ip is None
    assert result.error is not None


@pytest.mark.asyncio
async def test_ping_tcp_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
    async def accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()

    server = await asyncio.start_server(accept, host="127.0.0.1", port=0)
    port = server.sockets[0].getsockname()[1]
    monkeypatch.setattr(net.shutil, "which", lambda _: None)

    result = await ping_host("127.0.0.1", timeout=1, port=port)

    assert result.success
    assert result.method == "tcp_ping"
    assert result.ip == "127.0.0.1"
    assert result.time_ms is not None
    server.close()


@pytest.mark.asyncio
async def test_ping_tcp_fallback_refused(monkeypatch: pytest.MonkeyPatch) -> None:
    server = await asyncio.start_server(lambda r, w: None, host="127.0.0.1", port=0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    monkeypatch.setattr(net.shutil, "which", lambda _: None)

    result = await ping_host("127.0.0.1", timeout=1, port=port)

    assert not result.success
    assert result.method == "tcp_ping"
    assert result.error is not None


@pytest.mark.asyncio
async def test_ping_system_ping_failure_falls_back(monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing_ping(host: str, ip: str, timeout: float) -> net.PingResult:
        raise OSError("ping exited with 1")

    async def accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()

    server = await asyncio.start_server(accept, host="127.0.0.1", port=0)
    port = server.sockets[0].getsockname()[1]
    monkeypatch.setattr(net, "system_ping", failing_ping)

    result = await ping_host("127.0.0.1", timeout=1, port=port)

    assert result.success
    assert result.method == "tcp_ping"
    server.close()
