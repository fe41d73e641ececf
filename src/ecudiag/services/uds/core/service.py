# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum, unique
from typing import Any

from ecudiag.services.uds.core.constants import (
    ALL_DTC_GROUPS,
    COMMUNICATION_TYPE_ALL,
    DEFAULT_DTC_STATUS_MASK,
    MAX_ANSWERED_SESSION_TYPE,
    SUPPRESS_RESPONSE,
    UDSErrorCodes,
    UDSIsoServices,
)
from ecudiag.services.uds.core.exception import MalformedResponse, UnsupportedSecurityLevel
from ecudiag.services.uds.core.utils import (
    check_data_identifier,
    check_range,
    int_repr,
    nrc_repr,
    service_repr,
    to_bytes,
    uint32_to_bytes,
)
from ecudiag.utils import bytes_to_ascii_with_escape


@unique
class ResponseMode(Enum):
    """Whether the ECU is expected to answer a request at all."""

    AWAIT_RESPONSE = "await_response"
    FIRE_AND_FORGET = "fire_and_forget"


class UDSRequest(ABC):
    SERVICE_ID: int
    RESPONSE_SERVICE_ID: int

    def __init_subclass__(cls, /, service_id: int, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)

        cls.SERVICE_ID = service_id
        cls.RESPONSE_SERVICE_ID = service_id + 0x40

    @property
    @abstractmethod
    def pdu(self) -> bytes:
        pass

    @property
    def response_mode(self) -> ResponseMode:
        return ResponseMode.AWAIT_RESPONSE

    @property
    def service_id(self) -> int:
        return self.pdu[0]

    @property
    def data(self) -> bytes:
        return self.pdu[1:]

    @property
    def description(self) -> str:
        return service_repr(self.SERVICE_ID)

    def __repr__(self) -> str:
        attributes = ", ".join(
            f"{k}={int_repr(v) if isinstance(v, int) else repr(v)}"
            for k, v in vars(self).items()
        )
        return f"{type(self).__name__}({attributes})"


class UDSResponse:
    def __init__(self, pdu: bytes, request: UDSRequest) -> None:
        self.pdu = pdu
        self.trigger_request = request

    @property
    def service_id(self) -> int:
        return self.trigger_request.SERVICE_ID

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.pdu.hex()})"


class PositiveResponse(UDSResponse):
    @property
    def data(self) -> bytes:
        return self.pdu[1:]


class NegativeResponse(UDSResponse):
    @property
    def response_code(self) -> int:
        return self.pdu[2]

    @property
    def description(self) -> str:
        return nrc_repr(self.response_code)


def is_response_pending(pdu: bytes, service_id: int) -> bool:
    return pdu[:3] == bytes(
        [
            UDSIsoServices.NegativeResponse,
            service_id,
            UDSErrorCodes.requestCorrectlyReceivedResponsePending,
        ]
    )


def is_busy_repeat_request(pdu: bytes, service_id: int) -> bool:
    return pdu[:3] == bytes(
        [UDSIsoServices.NegativeResponse, service_id, UDSErrorCodes.busyRepeatRequest]
    )


def parse_response(pdu: bytes, request: UDSRequest) -> PositiveResponse | NegativeResponse:
    """Classifies the final answer to ``request``: positive iff the first byte
    is the response service id, negative for ``7F <sid> <nrc>``.
    """
    if len(pdu) == 0:
        raise MalformedResponse(request.SERVICE_ID, pdu, "empty response")
    if pdu[0] == request.RESPONSE_SERVICE_ID:
        return PositiveResponse(pdu, request)
    if pdu[0] == UDSIsoServices.NegativeResponse:
        if len(pdu) < 3:
            raise MalformedResponse(request.SERVICE_ID, pdu, "truncated negative response")
        if pdu[1] != request.SERVICE_ID:
            raise MalformedResponse(
                request.SERVICE_ID,
                pdu,
                f"negative response refers to {service_repr(pdu[1])}",
            )
        return NegativeResponse(pdu, request)
    raise MalformedResponse(request.SERVICE_ID, pdu, "unexpected response service id")


class DiagnosticSessionControlRequest(
    UDSRequest, service_id=UDSIsoServices.DiagnosticSessionControl
):
    def __init__(self, diagnostic_session_type: int) -> None:
        check_range(diagnostic_session_type, "diagnosticSessionType", 0, 0xFF)
        self.diagnostic_session_type = diagnostic_session_type

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID, self.diagnostic_session_type])

    @property
    def response_mode(self) -> ResponseMode:
        # Custom sessions switch the ECU away without an answer.
        if self.diagnostic_session_type > MAX_ANSWERED_SESSION_TYPE:
            return ResponseMode.FIRE_AND_FORGET
        return ResponseMode.AWAIT_RESPONSE


class ECUResetRequest(UDSRequest, service_id=UDSIsoServices.EcuReset):
    def __init__(self, reset_type: int) -> None:
        check_range(reset_type, "resetType", 0, 0xFF)
        self.reset_type = reset_type

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID, self.reset_type])


class ClearDiagnosticInformationRequest(
    UDSRequest, service_id=UDSIsoServices.ClearDiagnosticInformation
):
    def __init__(self, group_of_dtc: int = ALL_DTC_GROUPS) -> None:
        check_range(group_of_dtc, "groupOfDTC", 0, 0xFFFFFF)
        self.group_of_dtc = group_of_dtc

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID]) + to_bytes(self.group_of_dtc, 3)


class ReadDTCInformationRequest(UDSRequest, service_id=UDSIsoServices.ReadDTCInformation):
    def __init__(self, sub_function: int, dtc_status_mask: int = DEFAULT_DTC_STATUS_MASK) -> None:
        check_range(sub_function, "subFunction", 0, 0xFF)
        check_range(dtc_status_mask, "DTCStatusMask", 0, 0xFF)
        self.sub_function = sub_function
        self.dtc_status_mask = dtc_status_mask

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID, self.sub_function, self.dtc_status_mask])


class ReadDataByIdentifierRequest(UDSRequest, service_id=UDSIsoServices.ReadDataByIdentifier):
    def __init__(self, data_identifier: int) -> None:
        check_data_identifier(data_identifier)
        self.data_identifier = data_identifier

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID]) + to_bytes(self.data_identifier, 2)

    def decode_record(self, response: PositiveResponse) -> str:
        """Renders the data record of ``response`` as text; bytes which are
        not valid UTF-8 are shown escaped.
        """
        record = response.pdu[3:]
        try:
            return record.decode("utf-8")
        except UnicodeDecodeError:
            return bytes_to_ascii_with_escape(record)


class WriteDataByIdentifierRequest(
    UDSRequest, service_id=UDSIsoServices.WriteDataByIdentifier
):
    def __init__(self, data_identifier: int, data_record: bytes) -> None:
        check_data_identifier(data_identifier)
        self.data_identifier = data_identifier
        self.data_record = data_record

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID]) + to_bytes(self.data_identifier, 2) + self.data_record


class SecurityAccessRequestSeedRequest(UDSRequest, service_id=UDSIsoServices.SecurityAccess):
    def __init__(self, security_access_type: int) -> None:
        if security_access_type % 2 == 0 or not 0 < security_access_type < 0x7F:
            raise UnsupportedSecurityLevel(
                security_access_type, "requestSeed sub-functions are odd"
            )
        self.security_access_type = security_access_type

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID, self.security_access_type])

    def extract_seed(self, response: PositiveResponse) -> int:
        if len(response.pdu) < 6:
            raise MalformedResponse(self.SERVICE_ID, response.pdu, "seed is shorter than 4 bytes")
        return int.from_bytes(response.pdu[-4:], "big")


class SecurityAccessSendKeyRequest(UDSRequest, service_id=UDSIsoServices.SecurityAccess):
    def __init__(self, security_access_type: int, security_key: int) -> None:
        if security_access_type % 2 == 1 or not 0 < security_access_type < 0x7F:
            raise UnsupportedSecurityLevel(security_access_type, "sendKey sub-functions are even")
        self.security_access_type = security_access_type
        self.security_key = security_key

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID, self.security_access_type]) + uint32_to_bytes(
            self.security_key
        )


class CommunicationControlRequest(UDSRequest, service_id=UDSIsoServices.CommunicationControl):
    def __init__(
        self, control_type: int, communication_type: int = COMMUNICATION_TYPE_ALL
    ) -> None:
        check_range(control_type, "controlType", 0, 0xFF)
        check_range(communication_type, "communicationType", 0, 0xFF)
        self.control_type = control_type
        self.communication_type = communication_type

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID, self.control_type, self.communication_type])

    @property
    def response_mode(self) -> ResponseMode:
        if self.control_type > SUPPRESS_RESPONSE:
            return ResponseMode.FIRE_AND_FORGET
        return ResponseMode.AWAIT_RESPONSE


class TesterPresentRequest(UDSRequest, service_id=UDSIsoServices.TesterPresent):
    def __init__(self, suppress_response: bool = False) -> None:
        self.suppress_response = suppress_response

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID, SUPPRESS_RESPONSE if self.suppress_response else 0x00])

    @property
    def response_mode(self) -> ResponseMode:
        if self.suppress_response:
            return ResponseMode.FIRE_AND_FORGET
        return ResponseMode.AWAIT_RESPONSE


class ControlDTCSettingRequest(UDSRequest, service_id=UDSIsoServices.ControlDTCSetting):
    def __init__(self, dtc_setting_type: int) -> None:
        check_range(dtc_setting_type, "DTCSettingType", 0, 0xFF)
        self.dtc_setting_type = dtc_setting_type

    @property
    def pdu(self) -> bytes:
        return bytes([self.SERVICE_ID, self.dtc_setting_type])
