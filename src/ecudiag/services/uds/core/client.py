# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum, unique

from ecudiag.log import get_logger
from ecudiag.services.uds.core import service
from ecudiag.services.uds.core.constants import (
    ALL_DTC_GROUPS,
    COMMUNICATION_TYPE_ALL,
    DEFAULT_DTC_STATUS_MASK,
    ResetTypes,
)
from ecudiag.services.uds.core.exception import MalformedResponse, NoSeedAvailable
from ecudiag.services.uds.core.security import compute_key
from ecudiag.services.uds.core.utils import did_repr, int_repr
from ecudiag.transports.base import BaseTransport, NotConnected, ReceiveTimeout
from ecudiag.transports.doip import (
    DiagnosticMessage,
    DiagnosticMessageAcknowledgement,
    DiagnosticMessageNegativeAckError,
    PayloadTypes,
    ProtocolVersions,
    RoutingActivationDenied,
    RoutingActivationRequest,
    RoutingActivationRequestTypes,
    RoutingActivationResponse,
    RoutingActivationResponseCodes,
    diagnostic_message_marker,
    last_complete_frame,
    pack_frame,
    read_frame,
    routing_activation_success_prefix,
    unpack_frame,
)
from ecudiag.types import DiagnosticResult

logger = get_logger(__name__)


@unique
class SessionState(Enum):
    IDLE = "idle"
    ROUTING_PENDING = "routing_pending"
    ACTIVE = "active"
    AWAITING_RESPONSE = "awaiting_response"


class UDSClient:
    """A UDS session with one ECU on top of an already connected transport.

    :meth:`activate_routing` must succeed before any service can be used.
    Every service method returns a :class:`DiagnosticResult`; negative
    responses are results, not exceptions. Transport failures, timeouts and
    malformed answers propagate as exceptions.
    """

    def __init__(
        self,
        transport: BaseTransport,
        client_address: int,
        server_address: int,
        timeout: float,
        protocol_version: int = ProtocolVersions.ISO_13400_2_2012,
        activation_type: int = RoutingActivationRequestTypes.Default,
    ):
        self.transport = transport
        self.client_address = client_address
        self.server_address = server_address
        self.timeout = timeout
        self.protocol_version = protocol_version
        self.activation_type = activation_type
        self.state = SessionState.IDLE
        self.seed: int | None = None
        # Pending, busy and acknowledgement frames skipped during the last exchange.
        self.absorbed_frames = 0
        self.mutex = asyncio.Lock()
        self.marker = diagnostic_message_marker(protocol_version)
        self.logger = get_logger("ecudiag.uds")

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.ACTIVE, SessionState.AWAITING_RESPONSE)

    def _settle_state(self) -> None:
        self.state = SessionState.ACTIVE if self.transport.is_connected else SessionState.IDLE

    async def activate_routing(self) -> None:
        """Performs the DoIP routing activation handshake.
        Raises :class:`RoutingActivationDenied` unless the ECU grants it.
        """
        async with self.mutex:
            self.state = SessionState.ROUTING_PENDING
            self.seed = None

            request = RoutingActivationRequest(self.client_address, self.activation_type)
            frame = pack_frame(
                PayloadTypes.RoutingActivationRequest, request.pack(), self.protocol_version
            )
            try:
                await self.transport.write(frame, self.timeout, tags=["doip"])
                response = await read_frame(self.transport, self.timeout, tags=["doip"])
            except (TimeoutError, ConnectionError) as e:
                self.state = SessionState.IDLE
                logger.error(f"Routing activation failed: {e!r}")
                raise RoutingActivationDenied(message=f"no response: {e}") from e

            expected = routing_activation_success_prefix(
                self.client_address, self.server_address, self.protocol_version
            )
            if response.startswith(expected):
                self.state = SessionState.ACTIVE
                logger.info("Routing activation granted")
                return

            self.state = SessionState.IDLE
            logger.error(f"Routing activation denied: {response.hex()}")
            raise self._routing_denial(response)

    def _routing_denial(self, response: bytes) -> RoutingActivationDenied:
        try:
            header, payload = unpack_frame(response)
        except ValueError:
            return RoutingActivationDenied(message=f"invalid response {response.hex()}")

        if header.PayloadType != PayloadTypes.RoutingActivationResponse or len(payload) < 9:
            return RoutingActivationDenied(
                message=f"unexpected payload type {int_repr(header.PayloadType)}"
            )

        rar = RoutingActivationResponse.unpack(payload)
        if rar.RoutingActivationResponseCode == RoutingActivationResponseCodes.Success:
            return RoutingActivationDenied(
                rar.RoutingActivationResponseCode,
                f"unexpected addresses {int_repr(rar.SourceAddress)} -> "
                f"{int_repr(rar.TargetAddress)}",
            )
        return RoutingActivationDenied(rar.RoutingActivationResponseCode)

    async def request(
        self, request: service.UDSRequest, tags: list[str] | None = None
    ) -> service.PositiveResponse | service.NegativeResponse | None:
        """Sends ``request`` and waits for the final answer. Returns ``None``
        for requests the ECU does not answer.
        """
        async with self.mutex:
            return await self.request_unsafe(request, tags)

    async def request_unsafe(
        self, request: service.UDSRequest, tags: list[str] | None = None
    ) -> service.PositiveResponse | service.NegativeResponse | None:
        if self.state != SessionState.ACTIVE:
            raise NotConnected("routing activation required")

        message = DiagnosticMessage(self.client_address, self.server_address, request.pdu)
        frame = pack_frame(PayloadTypes.DiagnosticMessage, message.pack(), self.protocol_version)

        self.logger.debug(request.pdu.hex(), extra={"tags": ["write", "uds"] + (tags or [])})
        try:
            await self.transport.write(frame, self.timeout, tags=tags)
            if request.response_mode is service.ResponseMode.FIRE_AND_FORGET:
                self.logger.debug(f"{request.description}: no response expected")
                return None

            self.state = SessionState.AWAITING_RESPONSE
            pdu = await self._receive(request, tags)
        finally:
            self._settle_state()

        self.logger.debug(pdu.hex(), extra={"tags": ["read", "uds"] + (tags or [])})
        return service.parse_response(pdu, request)

    async def _receive(self, request: service.UDSRequest, tags: list[str] | None) -> bytes:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        self.absorbed_frames = 0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ReceiveTimeout(
                    f"no final response to {request.description} within {self.timeout}s"
                )

            frame = await read_frame(self.transport, remaining, tags=tags)
            pdu = self._classify(last_complete_frame(frame, self.marker), request)
            if pdu is not None:
                return pdu
            self.absorbed_frames += 1

    def _classify(self, frame: bytes, request: service.UDSRequest) -> bytes | None:
        """Returns the UDS payload of a final answer, or ``None`` for
        frames which mean "keep waiting".
        """
        try:
            header, payload = unpack_frame(frame)
        except ValueError as e:
            raise MalformedResponse(request.SERVICE_ID, frame, str(e)) from e

        ack_trailer = (
            self.server_address.to_bytes(2, "big")
            + self.client_address.to_bytes(2, "big")
            + b"\x00"
        )

        match header.PayloadType:
            case PayloadTypes.DiagnosticMessagePositiveAcknowledgement:
                self.logger.trace("Received diagnostic message ACK")
                return None
            case PayloadTypes.DiagnosticMessageNegativeAcknowledgement:
                if len(payload) < 5:
                    raise MalformedResponse(request.SERVICE_ID, frame, "truncated NACK")
                nack = DiagnosticMessageAcknowledgement.unpack(payload)
                raise DiagnosticMessageNegativeAckError(nack.ACKCode)
            case PayloadTypes.DiagnosticMessage:
                pass
            case PayloadTypes.AliveCheckRequest:
                self.logger.debug("Ignoring alive check request")
                return None
            case _:
                raise MalformedResponse(
                    request.SERVICE_ID,
                    frame,
                    f"unexpected DoIP payload type {int_repr(header.PayloadType)}",
                )

        if payload == ack_trailer:
            self.logger.trace("Received bare acknowledgement")
            return None
        if len(payload) < 5:
            raise MalformedResponse(request.SERVICE_ID, frame, "diagnostic message without data")

        pdu = DiagnosticMessage.unpack(payload).UserData
        if service.is_response_pending(pdu, request.SERVICE_ID):
            self.logger.info(f"{request.description}: response pending")
            return None
        if service.is_busy_repeat_request(pdu, request.SERVICE_ID):
            self.logger.info(f"{request.description}: ECU busy")
            return None
        return pdu

    async def _execute(
        self,
        request: service.UDSRequest,
        on_positive: Callable[[service.PositiveResponse], DiagnosticResult] | None = None,
    ) -> DiagnosticResult:
        response = await self.request(request)

        if response is None:
            return DiagnosticResult.ok(f"{request.description} sent, no response expected")

        if isinstance(response, service.NegativeResponse):
            logger.warning(f"{request.description} denied: {response.description}")
            return DiagnosticResult.fail(
                f"{request.description} denied: {response.description}", data=response.pdu
            )

        logger.info(f"{request.description} granted")
        if on_positive is not None:
            return on_positive(response)
        return DiagnosticResult.ok(f"{request.description} granted", data=response.pdu)

    async def start_session(self, session_type: int) -> DiagnosticResult:
        return await self._execute(service.DiagnosticSessionControlRequest(session_type))

    async def ecu_reset(self, reset_type: int = ResetTypes.HardReset) -> DiagnosticResult:
        return await self._execute(service.ECUResetRequest(reset_type))

    async def clear_diagnostic_information(
        self, group_of_dtc: int = ALL_DTC_GROUPS
    ) -> DiagnosticResult:
        return await self._execute(service.ClearDiagnosticInformationRequest(group_of_dtc))

    async def read_dtc_information(
        self, sub_function: int = 0x02, dtc_status_mask: int = DEFAULT_DTC_STATUS_MASK
    ) -> DiagnosticResult:
        return await self._execute(service.ReadDTCInformationRequest(sub_function, dtc_status_mask))

    async def read_data_by_identifier(self, data_identifier: int) -> DiagnosticResult:
        request = service.ReadDataByIdentifierRequest(data_identifier)

        def decode(response: service.PositiveResponse) -> DiagnosticResult:
            text = request.decode_record(response)
            logger.result(f"{did_repr(data_identifier)}: {text}")
            return DiagnosticResult.ok(
                f"{request.description} {did_repr(data_identifier)}: {text}",
                data=response.pdu,
            )

        return await self._execute(request, decode)

    async def write_data_by_identifier(
        self, data_identifier: int, data_record: bytes
    ) -> DiagnosticResult:
        return await self._execute(
            service.WriteDataByIdentifierRequest(data_identifier, data_record)
        )

    async def security_access_get_seed(self, level: int) -> DiagnosticResult:
        request = service.SecurityAccessRequestSeedRequest(level)

        def store_seed(response: service.PositiveResponse) -> DiagnosticResult:
            self.seed = request.extract_seed(response)
            logger.info(f"Received seed {self.seed:#010x} for level {int_repr(level)}")
            return DiagnosticResult.ok(
                f"{request.description} seed {self.seed:#010x}", data=response.pdu
            )

        return await self._execute(request, store_seed)

    async def security_access_compare_key(self, level: int, constant: int) -> DiagnosticResult:
        """Computes the key from the stored seed and ``constant`` and sends it."""
        if self.seed is None:
            raise NoSeedAvailable(level)

        key = compute_key(level, self.seed, constant)
        logger.debug(f"Computed key {key:#010x} from seed {self.seed:#010x}")
        return await self._execute(service.SecurityAccessSendKeyRequest(level, key))

    async def communication_control(
        self, control_type: int, communication_type: int = COMMUNICATION_TYPE_ALL
    ) -> DiagnosticResult:
        return await self._execute(
            service.CommunicationControlRequest(control_type, communication_type)
        )

    async def tester_present(self, suppress_response: bool = False) -> DiagnosticResult:
        return await self._execute(service.TesterPresentRequest(suppress_response))

    async def control_dtc_setting(self, setting_type: int) -> DiagnosticResult:
        return await self._execute(service.ControlDTCSettingRequest(setting_type))
