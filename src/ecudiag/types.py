# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ecudiag.net import DOIP_PORT, PingResult
from ecudiag.transports.base import TargetURI
from ecudiag.transports.doip import ProtocolVersions, RoutingActivationRequestTypes
from ecudiag.utils import auto_int, hex_int

DEFAULT_TIMEOUT = 30.0

__all__ = ["DOIP_PORT", "ConnectionConfig", "DiagnosticResult", "PingResult"]


class ConnectionConfig(BaseModel):
    """Everything needed to reach one ECU. Logical addresses are given as
    integers or hex strings, e.g. ``"0e80"`` or ``"0x0e80"``.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(default=DOIP_PORT, ge=1, le=0xFFFF)
    client_logical_address: int = Field(ge=0, le=0xFFFF)
    server_logical_address: int = Field(ge=0, le=0xFFFF)
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    protocol_version: int = ProtocolVersions.ISO_13400_2_2012.value
    activation_type: int = RoutingActivationRequestTypes.Default.value

    @field_validator("client_logical_address", "server_logical_address", mode="before")
    def hex_int(cls, v: Any) -> Any:
        if isinstance(v, str):
            return hex_int(v)
        return v

    @field_validator("protocol_version", "activation_type", mode="before")
    def auto_int(cls, v: Any) -> Any:
        if isinstance(v, str):
            return auto_int(v)
        return v

    def to_tcp_uri(self) -> TargetURI:
        return TargetURI.from_parts("tcp", self.host, self.port, {})


class DiagnosticResult(BaseModel):
    success: bool
    message: str
    data: bytes | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def ok(cls, message: str, data: bytes | None = None) -> DiagnosticResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, data: bytes | None = None) -> DiagnosticResult:
        return cls(success=False, message=message, data=data)

    @field_serializer("data")
    def serialize_data(self, data: bytes | None) -> str | None:
        return data.hex() if data is not None else None

