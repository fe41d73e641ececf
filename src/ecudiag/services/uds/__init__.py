# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0


from ecudiag.services.uds.core.client import SessionState, UDSClient
from ecudiag.services.uds.core.constants import UDSErrorCodes, UDSIsoServices
from ecudiag.services.uds.core.service import (
    NegativeResponse,
    PositiveResponse,
    ResponseMode,
    UDSRequest,
    UDSResponse,
)

__all__ = [
    "NegativeResponse",
    "PositiveResponse",
    "ResponseMode",
    "SessionState",
    "UDSClient",
    "UDSErrorCodes",
    "UDSIsoServices",
    "UDSRequest",
    "UDSResponse",
]
