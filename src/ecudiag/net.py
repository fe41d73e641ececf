# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

import asyncio
import re
import shutil
import socket
import sys

import pydantic

from ecudiag.log import get_logger

logger = get_logger(__name__)

DOIP_PORT = 13400

_PING_TIME = re.compile(r"time[=<]\s*([0-9.]+)\s*ms")


class PingResult(pydantic.BaseModel):
    success: bool
    host: str
    ip: str | None = None
    time_ms: float | None = None
    error: str | None = None
    method: str


def join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


async def resolve_host(host: str) -> str:
    """Returns the first address ``host`` resolves to; raises ``socket.gaierror``."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    if len(infos) == 0:
        raise socket.gaierror(f"no address found for {host}")
    return str(infos[0][4][0])


def _ping_command(ip: str, timeout: float) -> list[str] | None:
    binary = shutil.which("ping")
    if binary is None:
        return None
    if sys.platform == "win32":
        return [binary, "-n", "1", "-w", str(int(timeout * 1000)), ip]
    return [binary, "-c", "1", "-W", str(max(1, int(timeout))), ip]


async def system_ping(host: str, ip: str, timeout: float) -> PingResult:
    cmd = _ping_command(ip, timeout)
    if cmd is None:
        raise FileNotFoundError("no ping binary found")

    loop = asyncio.get_running_loop()
    start = loop.time()
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout + 1)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    elapsed = (loop.time() - start) * 1000

    output = stdout.decode(errors="replace")
    if proc.returncode != 0:
        raise OSError(f"ping exited with {proc.returncode}: {output.strip()}")

    m = _PING_TIME.search(output)
    time_ms = float(m.group(1)) if m is not None else round(elapsed, 3)
    return PingResult(success=True, host=host, ip=ip, time_ms=time_ms, method="system_ping")


async def tcp_ping(host: str, ip: str, port: int, timeout: float) -> PingResult:
    loop = asyncio.get_running_loop()
    start = loop.time()
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout)
    except (OSError, TimeoutError) as e:
        return PingResult(
            success=False,
            host=host,
            ip=ip,
            error=f"tcp connect to port {port} failed: {e!r}",
            method="tcp_ping",
        )
    time_ms = round((loop.time() - start) * 1000, 3)
    writer.close()
    try:
        await writer.wait_closed()
    except ConnectionError:
        pass
    return PingResult(success=True, host=host, ip=ip, time_ms=time_ms, method="tcp_ping")


async def ping_host(host: str, timeout: float = 5.0, port: int = DOIP_PORT) -> PingResult:
    """Checks whether ``host`` is reachable. Uses the system ping and falls
    back to a TCP connect on ``port`` when that is unavailable or fails.
    Never raises; failures are reported in the result.
    """
    try:
        ip = await resolve_host(host)
    except (OSError, UnicodeError) as e:
        logger.warning(f"Could not resolve {host}: {e}")
        return PingResult(
            success=False, host=host, error=f"could not resolve host: {e}", method="resolve"
        )

    try:
        result = await system_ping(host, ip, timeout)
    except (OSError, TimeoutError) as e:
        logger.info(f"System ping of {host} failed ({e!r}), trying tcp connect")
    else:
        logger.info(f"{host} ({ip}) is alive: {result.time_ms} ms")
        return result

    result = await tcp_ping(host, ip, port, timeout)
    if result.success:
        logger.info(f"{host} ({ip}) accepts connections on port {port}: {result.time_ms} ms")
    else:
        logger.warning(f"{host} ({ip}) is not reachable: {result.error}")
    return result
