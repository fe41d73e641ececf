# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from enum import IntEnum, unique


@unique
class UDSIsoServices(IntEnum):
    DiagnosticSessionControl = 0x10
    EcuReset = 0x11
    ClearDiagnosticInformation = 0x14
    ReadDTCInformation = 0x19
    ReadDataByIdentifier = 0x22
    SecurityAccess = 0x27
    CommunicationControl = 0x28
    WriteDataByIdentifier = 0x2E
    RoutineControl = 0x31
    TesterPresent = 0x3E
    ControlDTCSetting = 0x85
    NegativeResponse = 0x7F


@unique
class UDSErrorCodes(IntEnum):
    generalReject = 0x10
    serviceNotSupported = 0x11
    subFunctionNotSupported = 0x12
    incorrectMessageLengthOrInvalidFormat = 0x13
    responseTooLong = 0x14
    busyRepeatRequest = 0x21
    conditionsNotCorrect = 0x22
    requestSequenceError = 0x24
    noResponseFromSubnetComponent = 0x25
    failurePreventsExecutionOfRequestedAction = 0x26
    requestOutOfRange = 0x31
    securityAccessDenied = 0x33
    authenticationRequired = 0x34
    invalidKey = 0x35
    exceededNumberOfAttempts = 0x36
    requiredTimeDelayNotExpired = 0x37
    uploadDownloadNotAccepted = 0x70
    transferDataSuspended = 0x71
    generalProgrammingFailure = 0x72
    wrongBlockSequenceCounter = 0x73
    requestCorrectlyReceivedResponsePending = 0x78
    subFunctionNotSupportedInActiveSession = 0x7E
    serviceNotSupportedInActiveSession = 0x7F
    voltageTooHigh = 0x92
    voltageTooLow = 0x93


@unique
class DiagnosticSessionTypes(IntEnum):
    DefaultSession = 0x01
    ProgrammingSession = 0x02
    ExtendedDiagnosticSession = 0x03


@unique
class ResetTypes(IntEnum):
    HardReset = 0x01
    KeyOffOnReset = 0x02
    SoftReset = 0x03


@unique
class CommonDataIdentifiers(IntEnum):
    VIN = 0xF190
    HardwareVersion = 0xF191
    SoftwareVersion = 0xF194
    CalibrationVersion = 0xF195
    ECUSerialNumber = 0xF18C
    ECUManufacturingDate = 0xF18A
    ECUInstallationDate = 0xF18B


class DTCStatusMask(IntEnum):
    TestFailed = 0x01
    TestFailedThisOperationCycle = 0x02
    PendingDTC = 0x04
    ConfirmedDTC = 0x08
    TestNotCompletedSinceLastClear = 0x10
    TestFailedSinceLastClear = 0x20
    TestNotCompletedThisOperationCycle = 0x40
    WarningIndicatorRequested = 0x80


# SuppressPosRspMsgIndicationBit of sub-function bytes.
SUPPRESS_RESPONSE = 0x80
# Highest session type which still expects an answer from the ECU.
MAX_ANSWERED_SESSION_TYPE = DiagnosticSessionTypes.ExtendedDiagnosticSession
# The communicationType which is sent along every CommunicationControl request.
COMMUNICATION_TYPE_ALL = 0x03
# groupOfDTC addressing all groups.
ALL_DTC_GROUPS = 0xFFFFFF
DEFAULT_DTC_STATUS_MASK = 0xAF
