# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from ecudiag.services.uds.core.utils import int_repr, service_repr


class UDSException(Exception):
    def __init__(self, message: str | None = None):
        self.message = message

        super().__init__(message)

    def _message_core(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        message = self._message_core()

        if self.message is not None:
            message = f"{message}; {self.message}"

        return message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({repr(str(self))})"


class NoSeedAvailable(UDSException):
    def __init__(self, level: int, message: str | None = None):
        self.level = level

        super().__init__(message)

    def _message_core(self) -> str:
        return f"no seed available for sendKey {int_repr(self.level)}, request a seed first"


class UnsupportedSecurityLevel(UDSException, ValueError):
    def __init__(self, level: int, message: str | None = None):
        self.level = level

        super().__init__(message)

    def _message_core(self) -> str:
        return f"unsupported security level: {int_repr(self.level)}"


class MalformedRequest(UDSException, ValueError):
    def __init__(self, service_id: int, message: str | None = None):
        self.service_id = service_id

        super().__init__(message)

    def _message_core(self) -> str:
        return f"malformed request for {service_repr(self.service_id)}"


class MalformedResponse(UDSException):
    def __init__(self, service_id: int, pdu: bytes, message: str | None = None):
        self.service_id = service_id
        self.pdu = pdu

        super().__init__(message)

    def _message_core(self) -> str:
        return f"malformed response {self.pdu.hex()} to {service_repr(self.service_id)}"


class UnsupportedService(UDSException):
    def __init__(self, service_id: int, message: str | None = None):
        self.service_id = service_id

        super().__init__(message)

    def _message_core(self) -> str:
        return f"unsupported UDS service: {int_repr(self.service_id)}"
