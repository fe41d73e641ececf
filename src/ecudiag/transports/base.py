# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from abc import ABC, abstractmethod
from typing import Any, Self
from urllib.parse import urlencode, urlsplit, urlunsplit

from ecudiag.net import join_host_port


class ConnectionTimeout(TimeoutError):
    """The connection could not be established within the deadline."""


class ConnectionRefused(ConnectionRefusedError):
    """The peer refused the connection or the host could not be resolved."""


class NotConnected(ConnectionError):
    """An I/O operation was attempted on a transport which is not connected."""

    def __init__(self, message: str = "not connected") -> None:
        super().__init__(message)


class TransportError(ConnectionError):
    """Sending or receiving failed, e.g. the peer closed the connection."""


class ReceiveTimeout(TimeoutError):
    """No (final) message arrived within the deadline."""


class TargetURI:
    """Where a transport connects to, written as a URI with the
    transport as scheme and optional parameters in the query string:
    ``tcp://192.0.2.2:13400``.
    """

    def __init__(self, raw: str) -> None:
        self.raw = raw
        self.url = urlsplit(raw)

    @classmethod
    def from_parts(
        cls,
        scheme: str,
        host: str,
        port: int | None,
        args: dict[str, Any],
    ) -> Self:
        netloc = host if port is None else join_host_port(host, port)
        return cls(urlunsplit((scheme, netloc, "", urlencode(args), "")))

    @property
    def scheme(self) -> str:
        return self.url.scheme

    @property
    def hostname(self) -> str | None:
        return self.url.hostname

    @property
    def port(self) -> int | None:
        return self.url.port

    @property
    def location(self) -> str:
        """``scheme://host:port`` without the query string, used in log messages."""
        return f"{self.scheme}://{self.url.netloc}"

    def __str__(self) -> str:
        return self.raw


class BaseTransport(ABC):
    """One connection to one peer, moving raw bytes.

    Subclasses declare their URI scheme in the class
    statement, e.g. ``class TCPTransport(BaseTransport, scheme="tcp")``.
    Instances are not safe for concurrent use; the UDS client holds a
    lock around every exchange. ``tags`` given to :meth:`read_exactly` and
    :meth:`write` end up in the ``tags`` field of the debug log records.
    """

    SCHEME: str = ""

    def __init__(self, target: TargetURI) -> None:
        self.target = target
        self.is_closed = False

    def __init_subclass__(
        cls,
        /,
        scheme: str,
        **kwargs: Any,
    ) -> None:
        super().__init_subclass__(**kwargs)
        cls.SCHEME = scheme

    @classmethod
    def check_scheme(cls, target: TargetURI) -> None:
        if target.scheme != cls.SCHEME:
            raise ValueError(f"{cls.__name__} expects {cls.SCHEME}://, got {target}")

    @property
    def is_connected(self) -> bool:
        return not self.is_closed

    @classmethod
    @abstractmethod
    async def connect(
        cls,
        target: str | TargetURI,
        timeout: float | None = None,
    ) -> Self:
        """Opens a connection to ``target``. Raises :class:`ConnectionTimeout`
        or :class:`ConnectionRefused`.
        """

    @abstractmethod
    async def close(self) -> None:
        """Closes the connection; idempotent."""

    @abstractmethod
    async def read_exactly(
        self,
        n: int,
        timeout: float | None = None,
        tags: list[str] | None = None,
    ) -> bytes:
        """Returns exactly ``n`` bytes from the peer, waiting for as many
        segments as it takes. Raises :class:`ReceiveTimeout` if they do not
        arrive within ``timeout`` and :class:`TransportError` if the peer
        closed the connection before.
        """

    @abstractmethod
    async def write(
        self,
        data: bytes,
        timeout: float | None = None,
        tags: list[str] | None = None,
    ) -> int:
        """Sends ``data`` and returns its length once it is flushed."""
