# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from types import TracebackType
from typing import Self

from ecudiag.log import get_logger
from ecudiag.net import PingResult
from ecudiag.net import ping_host as _ping_host
from ecudiag.services.uds.core.client import UDSClient
from ecudiag.services.uds.core.constants import (
    ALL_DTC_GROUPS,
    DEFAULT_DTC_STATUS_MASK,
    SUPPRESS_RESPONSE,
    DiagnosticSessionTypes,
    ResetTypes,
    UDSIsoServices,
)
from ecudiag.services.uds.core.exception import MalformedRequest, UnsupportedService
from ecudiag.services.uds.core.utils import from_bytes, int_repr, service_repr
from ecudiag.transports.base import BaseTransport
from ecudiag.transports.tcp import TCPTransport
from ecudiag.types import ConnectionConfig, DiagnosticResult
from ecudiag.utils import bytes_to_hex, hex_int, hex_to_bytes

logger = get_logger(__name__)

DEFAULT_SECURITY_CONSTANT = 0x1234

# Defaults for requests which are sent without parameters.
DEFAULT_DTC_REPORT_TYPE = 0x02
DEFAULT_COMMUNICATION_CONTROL_TYPE = 0x00
DEFAULT_DTC_SETTING_TYPE = 0x02


def parse_service_id(raw: str) -> int:
    """Parses a service id like ``"22"`` or ``"0x22"``."""
    try:
        service_id = hex_int(raw)
    except ValueError:
        raise ValueError(f"invalid service id: {raw!r}") from None
    if not 0 <= service_id <= 0xFF:
        raise ValueError(f"invalid service id: {raw!r}")
    return service_id


class UDSClientManager:
    """Owns at most one ECU session and exposes it through a small,
    exception free API: every operation returns a :class:`DiagnosticResult`.
    """

    def __init__(
        self,
        security_constant: int = DEFAULT_SECURITY_CONSTANT,
        transport_class: type[BaseTransport] = TCPTransport,
    ) -> None:
        self.security_constant = security_constant
        self.transport_class = transport_class
        self.transport: BaseTransport | None = None
        self.client: UDSClient | None = None
        self.config: ConnectionConfig | None = None
        self._connecting = False

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.disconnect()

    def get_connection_status(self) -> bool:
        return (
            self.client is not None
            and self.transport is not None
            and self.client.is_active
            and self.transport.is_connected
        )

    def get_connection_config(self) -> ConnectionConfig | None:
        return self.config

    async def connect(self, config: ConnectionConfig) -> DiagnosticResult:
        if self._connecting:
            return DiagnosticResult.fail("a connect is already in progress")
        if self.get_connection_status():
            return DiagnosticResult.fail(
                f"already connected to {self.config.host if self.config else 'an ECU'}, "
                "disconnect first"
            )

        self._connecting = True
        try:
            await self._teardown()
            await self._connect(config)
        except Exception as e:
            logger.error(f"Connecting to {config.host}:{config.port} failed: {e!r}")
            return DiagnosticResult.fail(f"connection to {config.host}:{config.port} failed: {e}")
        finally:
            self._connecting = False

        return DiagnosticResult.ok(
            f"connected to ECU {config.host}:{config.port}, routing activation granted"
        )

    async def _connect(self, config: ConnectionConfig) -> None:
        transport = await self.transport_class.connect(config.to_tcp_uri(), config.timeout)
        client = UDSClient(
            transport,
            client_address=config.client_logical_address,
            server_address=config.server_logical_address,
            timeout=config.timeout,
            protocol_version=config.protocol_version,
            activation_type=config.activation_type,
        )
        try:
            await client.activate_routing()
        except BaseException:
            await transport.close()
            raise

        self.transport = transport
        self.client = client
        self.config = config

    async def _teardown(self) -> None:
        transport = self.transport
        self.transport = None
        self.client = None
        self.config = None
        if transport is not None:
            await transport.close()

    async def disconnect(self) -> DiagnosticResult:
        was_connected = self.transport is not None
        await self._teardown()
        if was_connected:
            logger.info("Disconnected from ECU")
        return DiagnosticResult.ok("disconnected")

    async def ping_host(self, host: str) -> PingResult:
        return await _ping_host(host)

    async def send_command(self, service_id: str, data: str = "") -> DiagnosticResult:
        """Runs one UDS service. ``data`` is the hex encoded request including
        the service id, e.g. ``"22 f1 90"``; an empty string selects the
        default parameters of the service.
        """
        if not self.get_connection_status() or self.client is None:
            return DiagnosticResult.fail("not connected to an ECU")

        try:
            sid = parse_service_id(service_id)
            pdu = hex_to_bytes(data)
        except ValueError as e:
            return DiagnosticResult.fail(f"invalid input: {e}")

        logger.debug(f"{service_repr(sid)} request: {bytes_to_hex(pdu) or 'defaults'}")

        try:
            result = await self._dispatch(self.client, sid, pdu)
        except Exception as e:
            logger.error(f"{service_repr(sid)} failed: {e!r}")
            result = DiagnosticResult.fail(f"{service_repr(sid)} failed: {e}")

        if not self.get_connection_status():
            logger.warning("Connection to the ECU lost")
            await self._teardown()

        return result

    async def _dispatch(  # noqa: PLR0911
        self, client: UDSClient, service_id: int, pdu: bytes
    ) -> DiagnosticResult:
        if len(pdu) > 0 and pdu[0] != service_id:
            raise MalformedRequest(
                service_id, f"data starts with {int_repr(pdu[0])} instead of the service id"
            )
        params = pdu[1:]

        def param(index: int, default: int) -> int:
            return params[index] if len(params) > index else default

        match service_id:
            case UDSIsoServices.DiagnosticSessionControl:
                return await client.start_session(
                    param(0, DiagnosticSessionTypes.DefaultSession)
                )
            case UDSIsoServices.EcuReset:
                return await client.ecu_reset(param(0, ResetTypes.HardReset))
            case UDSIsoServices.ClearDiagnosticInformation:
                if 0 < len(params) < 3:
                    raise MalformedRequest(service_id, "groupOfDTC must be 3 bytes long")
                group = from_bytes(params[:3]) if len(params) > 0 else ALL_DTC_GROUPS
                return await client.clear_diagnostic_information(group)
            case UDSIsoServices.ReadDTCInformation:
                return await client.read_dtc_information(
                    param(0, DEFAULT_DTC_REPORT_TYPE), param(1, DEFAULT_DTC_STATUS_MASK)
                )
            case UDSIsoServices.ReadDataByIdentifier:
                if len(params) < 2:
                    raise MalformedRequest(service_id, "a 2 byte dataIdentifier is required")
                return await client.read_data_by_identifier(from_bytes(params[:2]))
            case UDSIsoServices.WriteDataByIdentifier:
                if len(params) < 2:
                    raise MalformedRequest(service_id, "a 2 byte dataIdentifier is required")
                return await client.write_data_by_identifier(from_bytes(params[:2]), params[2:])
            case UDSIsoServices.SecurityAccess:
                return await self._security_access(client, params)
            case UDSIsoServices.CommunicationControl:
                return await client.communication_control(
                    param(0, DEFAULT_COMMUNICATION_CONTROL_TYPE)
                )
            case UDSIsoServices.TesterPresent:
                sub_function = param(0, 0x00)
                if sub_function not in (0x00, SUPPRESS_RESPONSE):
                    raise MalformedRequest(
                        service_id, f"unsupported sub-function {int_repr(sub_function)}"
                    )
                return await client.tester_present(sub_function == SUPPRESS_RESPONSE)
            case UDSIsoServices.ControlDTCSetting:
                return await client.control_dtc_setting(param(0, DEFAULT_DTC_SETTING_TYPE))
            case _:
                raise UnsupportedService(service_id)

    async def _security_access(self, client: UDSClient, params: bytes) -> DiagnosticResult:
        if len(params) < 1:
            raise MalformedRequest(UDSIsoServices.SecurityAccess, "a security level is required")

        level = params[0]
        if level % 2 == 1:
            return await client.security_access_get_seed(level)

        constant_bytes = params[1:]
        if len(constant_bytes) > 4:
            raise MalformedRequest(
                UDSIsoServices.SecurityAccess, "the key constant is at most 4 bytes long"
            )
        constant = from_bytes(constant_bytes) if constant_bytes else self.security_constant
        return await client.security_access_compare_key(level, constant)
