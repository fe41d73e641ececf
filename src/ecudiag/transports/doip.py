# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from enum import IntEnum, unique
from typing import Any

from ecudiag.log import get_logger
from ecudiag.transports.base import BaseTransport, ReceiveTimeout, TransportError

logger = get_logger(__name__)

HEADER_LENGTH = 8
DEFAULT_OEM_RESERVED = 0xFFFFFFFF


@unique
class ProtocolVersions(IntEnum):
    ISO_13400_2_2010 = 0x01
    ISO_13400_2_2012 = 0x02
    ISO_13400_2_2019 = 0x03


@unique
class RoutingActivationRequestTypes(IntEnum):
    RESERVED = 0xFF
    ManufacturerSpecific = 0xFE
    Default = 0x00
    WWH_OBD = 0x01
    CentralSecurity = 0xE0

    @classmethod
    def _missing_(cls, value: Any) -> RoutingActivationRequestTypes:
        if value in range(0xE1, 0x100):
            return cls.ManufacturerSpecific
        return cls.RESERVED


@unique
class RoutingActivationResponseCodes(IntEnum):
    RESERVED = 0xFF
    ManufacturerSpecific = 0xFE
    UnknownSourceAddress = 0x00
    NoResources = 0x01
    InvalidConnectionEntry = 0x02
    AlreadyActive = 0x03
    AuthenticationMissing = 0x04
    ConfirmationRejected = 0x05
    UnsupportedActivationType = 0x06
    TLSRequired = 0x07
    Success = 0x10
    SuccessConfirmationRequired = 0x11

    @classmethod
    def _missing_(cls, value: Any) -> RoutingActivationResponseCodes:
        if value in range(0xE0, 0xFF):
            return cls.ManufacturerSpecific
        return cls.RESERVED


class RoutingActivationDenied(ConnectionAbortedError):
    rac_code: RoutingActivationResponseCodes | None

    def __init__(self, rac_code: int | None = None, message: str | None = None):
        self.rac_code = RoutingActivationResponseCodes(rac_code) if rac_code is not None else None
        if message is None:
            if self.rac_code is not None:
                message = f"{self.rac_code.name} ({rac_code:#04x})"
            else:
                message = "no valid routing activation response"
        super().__init__(f"DoIP routing activation denied: {message}")


@unique
class PayloadTypes(IntEnum):
    GenericDoIPHeaderNACK = 0x0000
    VehicleIdentificationRequestMessage = 0x0001
    VehicleIdentificationRequestMessageWithEID = 0x0002
    VehicleIdentificationRequestMessageWithVIN = 0x0003
    VehicleAnnouncementMessage = 0x0004
    RoutingActivationRequest = 0x0005
    RoutingActivationResponse = 0x0006
    AliveCheckRequest = 0x0007
    AliveCheckResponse = 0x0008
    DoIPEntityStatusRequest = 0x4001
    DoIPEntityStatusResponse = 0x4002
    DiagnosticPowerModeInformationRequest = 0x4003
    DiagnosticPowerModeInformationResponse = 0x4004
    DiagnosticMessage = 0x8001
    DiagnosticMessagePositiveAcknowledgement = 0x8002
    DiagnosticMessageNegativeAcknowledgement = 0x8003


@unique
class DiagnosticMessageNegativeAckCodes(IntEnum):
    RESERVED = 0xFF
    InvalidSourceAddress = 0x02
    UnknownTargetAddress = 0x03
    DiagnosticMessageTooLarge = 0x04
    OutOfMemory = 0x05
    TargetUnreachable = 0x06
    UnknownNetwork = 0x07
    TransportProtocolError = 0x08

    @classmethod
    def _missing_(cls, value: Any) -> DiagnosticMessageNegativeAckCodes:
        return cls.RESERVED


class DiagnosticMessageNegativeAckError(TransportError):
    nack_code: DiagnosticMessageNegativeAckCodes

    def __init__(self, negative_ack_code: int):
        self.nack_code = DiagnosticMessageNegativeAckCodes(negative_ack_code)
        super().__init__(
            f"DoIP negative ACK received: {self.nack_code.name} ({negative_ack_code:#04x})"
        )


@dataclass
class GenericHeader:
    ProtocolVersion: int
    PayloadType: int
    PayloadLength: int

    def pack(self) -> bytes:
        return struct.pack(
            "!BBHL",
            self.ProtocolVersion,
            self.ProtocolVersion ^ 0xFF,
            self.PayloadType,
            self.PayloadLength,
        )

    @classmethod
    def unpack(cls, data: bytes) -> GenericHeader:
        (
            protocol_version,
            inverse_protocol_version,
            payload_type,
            payload_length,
        ) = struct.unpack("!BBHL", data)
        if protocol_version != inverse_protocol_version ^ 0xFF:
            raise ValueError("inverse protocol_version is invalid")
        return cls(
            protocol_version,
            payload_type,
            payload_length,
        )


@dataclass
class RoutingActivationRequest:
    SourceAddress: int
    ActivationType: int
    Reserved: int = 0x00000000  # Not used, default value.
    OEMReserved: int = DEFAULT_OEM_RESERVED

    def pack(self) -> bytes:
        return struct.pack(
            "!HBII",
            self.SourceAddress,
            self.ActivationType,
            self.Reserved,
            self.OEMReserved,
        )


@dataclass
class RoutingActivationResponse:
    SourceAddress: int
    TargetAddress: int
    RoutingActivationResponseCode: int
    Reserved: int = 0x00000000  # Not used, default value.

    def pack(self) -> bytes:
        return struct.pack(
            "!HHBI",
            self.SourceAddress,
            self.TargetAddress,
            self.RoutingActivationResponseCode,
            self.Reserved,
        )

    @classmethod
    def unpack(cls, data: bytes) -> RoutingActivationResponse:
        # The optional OEM specific trailer is ignored.
        (
            source_address,
            target_address,
            routing_activation_response_code,
            reserved,
        ) = struct.unpack("!HHBI", data[:9])
        return cls(
            source_address,
            target_address,
            routing_activation_response_code,
            reserved,
        )


@dataclass
class DiagnosticMessage:
    SourceAddress: int
    TargetAddress: int
    UserData: bytes

    def pack(self) -> bytes:
        return (
            struct.pack(
                "!HH",
                self.SourceAddress,
                self.TargetAddress,
            )
            + self.UserData
        )

    @classmethod
    def unpack(cls, data: bytes) -> DiagnosticMessage:
        source_address, target_address = struct.unpack("!HH", data[:4])
        data = data[4:]
        return cls(source_address, target_address, data)


@dataclass
class DiagnosticMessageAcknowledgement:
    SourceAddress: int
    TargetAddress: int
    ACKCode: int
    PreviousDiagnosticMessageData: bytes

    def pack(self) -> bytes:
        return (
            struct.pack(
                "!HHB",
                self.SourceAddress,
                self.TargetAddress,
                self.ACKCode,
            )
            + self.PreviousDiagnosticMessageData
        )

    @classmethod
    def unpack(cls, data: bytes) -> DiagnosticMessageAcknowledgement:
        source_address, target_address, ack_code = struct.unpack("!HHB", data[:5])
        return cls(source_address, target_address, ack_code, data[5:])


def pack_frame(
    payload_type: int,
    payload: bytes,
    protocol_version: int = ProtocolVersions.ISO_13400_2_2012,
) -> bytes:
    header = GenericHeader(protocol_version, payload_type, len(payload))
    return header.pack() + payload


def unpack_frame(data: bytes) -> tuple[GenericHeader, bytes]:
    """Splits ``data`` into the generic header and everything after it.
    The payload is not checked against the declared length.
    """
    if len(data) < HEADER_LENGTH:
        raise ValueError(f"DoIP frame too short: {len(data)} bytes")
    return GenericHeader.unpack(data[:HEADER_LENGTH]), data[HEADER_LENGTH:]


async def read_frame(
    transport: BaseTransport,
    timeout: float | None = None,
    tags: list[str] | None = None,
) -> bytes:
    """Receives one complete DoIP message: the generic header, then exactly
    as many payload bytes as it declares, however the peer segments them.

    Raises :class:`ReceiveTimeout` unless the whole message arrives within
    ``timeout``. An invalid header closes the transport, as the stream
    cannot be resynchronized, and raises :class:`TransportError`.
    """

    async def read() -> bytes:
        hdr_buf = await transport.read_exactly(HEADER_LENGTH, tags=tags)
        try:
            hdr = GenericHeader.unpack(hdr_buf)
        except ValueError as e:
            await transport.close()
            raise TransportError(f"invalid DoIP header {hdr_buf.hex()}: {e}") from e
        return hdr_buf + await transport.read_exactly(hdr.PayloadLength, tags=tags)

    try:
        return await asyncio.wait_for(read(), timeout)
    except TimeoutError as e:
        raise ReceiveTimeout(f"no complete DoIP message within {timeout}s") from e


def diagnostic_message_marker(
    protocol_version: int = ProtocolVersions.ISO_13400_2_2012,
) -> bytes:
    """The first four header bytes of every diagnostic message, e.g. ``02 fd 80 01``."""
    return struct.pack(
        "!BBH", protocol_version, protocol_version ^ 0xFF, PayloadTypes.DiagnosticMessage
    )


def routing_activation_success_prefix(
    client_address: int,
    server_address: int,
    protocol_version: int = ProtocolVersions.ISO_13400_2_2012,
) -> bytes:
    """The bytes a granted routing activation response must start with."""
    header = GenericHeader(protocol_version, PayloadTypes.RoutingActivationResponse, 9)
    return header.pack() + RoutingActivationResponse(
        client_address,
        server_address,
        RoutingActivationResponseCodes.Success,
    ).pack()


def index_of(haystack: bytes, needle: bytes, start: int = 0) -> int:
    if len(needle) == 0:
        return -1
    return haystack.find(needle, start)


def starts_with(data: bytes, prefix: bytes) -> bool:
    return data.startswith(prefix)


def ends_with(data: bytes, suffix: bytes) -> bool:
    return data.endswith(suffix)


def count_frames(data: bytes, marker: bytes) -> int:
    """Counts the occurrences of ``marker``, overlapping ones included."""
    count = 0
    pos = index_of(data, marker)
    while pos != -1:
        count += 1
        pos = index_of(data, marker, pos + 1)
    return count


def extract_last_frame(data: bytes, marker: bytes) -> bytes | None:
    """Returns everything from the last occurrence of ``marker`` on."""
    last = -1
    pos = index_of(data, marker)
    while pos != -1:
        last = pos
        pos = index_of(data, marker, pos + 1)
    if last == -1:
        return None
    return data[last:]


def split_frames(data: bytes) -> list[bytes]:
    """Walks ``data`` by the declared payload lengths and returns every
    complete DoIP frame. Walking stops at the first invalid header or
    truncated frame; the remainder is dropped.
    """
    frames = []
    pos = 0
    while len(data) - pos >= HEADER_LENGTH:
        try:
            header = GenericHeader.unpack(data[pos : pos + HEADER_LENGTH])
        except ValueError:
            break
        end = pos + HEADER_LENGTH + header.PayloadLength
        if end > len(data):
            break
        frames.append(data[pos:end])
        pos = end
    return frames


def last_complete_frame(data: bytes, marker: bytes) -> bytes:
    """Reduces a chunk holding several coalesced frames to the last one.
    Chunks which cannot be walked by length fall back to the last
    ``marker`` occurrence; a single frame is returned unchanged.
    """
    frames = split_frames(data)
    if len(frames) > 1:
        logger.debug(f"Received {len(frames)} coalesced frames, keeping the last one")
        return frames[-1]
    if len(frames) == 0 and count_frames(data, marker) > 1:
        last = extract_last_frame(data, marker)
        if last is not None:
            return last
    return data
