# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from ecudiag.transports.base import BaseTransport, TargetURI
from ecudiag.transports.tcp import TCPTransport

__all__ = [
    "BaseTransport",
    "TCPTransport",
    "TargetURI",
]
