# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from ecudiag.services.uds.core.constants import (
    CommonDataIdentifiers,
    UDSErrorCodes,
    UDSIsoServices,
)

MASK32 = 0xFFFFFFFF


def from_bytes(x: bytes) -> int:
    return int.from_bytes(x, "big")


def to_bytes(x: int, length: int) -> bytes:
    return x.to_bytes(length, "big")


def uint32_to_bytes(x: int) -> bytes:
    if not 0 <= x <= MASK32:
        raise ValueError(f"{x} does not fit into 32 bits")
    return to_bytes(x, 4)


def bytes_to_uint32(b: bytes) -> int:
    if len(b) != 4:
        raise ValueError("bytes array must be 4 bytes long")
    return from_bytes(b)


def rotate_left32(x: int, n: int) -> int:
    n %= 32
    x &= MASK32
    return ((x << n) | (x >> (32 - n))) & MASK32


def rotate_right32(x: int, n: int) -> int:
    n %= 32
    x &= MASK32
    return ((x >> n) | (x << (32 - n))) & MASK32


def check_range(data: int, name: str, min_value: int, max_value: int) -> None:
    if not min_value <= data <= max_value:
        raise ValueError(
            f"The {name} parameter must be between {int_repr(min_value)} and "
            f"{int_repr(max_value)}"
        )


def check_data_identifier(data_identifier: int) -> None:
    if not 0 <= data_identifier <= 0xFFFF:
        raise ValueError(f"Not a valid dataIdentifier: {int_repr(data_identifier)}")


def int_repr(n: int, prefix: bool = True) -> str:
    s = f"{n:x}"

    if len(s) % 2 == 1:
        s = f"0{s}"

    if prefix:
        s = f"0x{s}"

    return s


def service_repr(service_id: int) -> str:
    try:
        return str(UDSIsoServices(service_id).name)
    except ValueError:
        return f"Unknown service {int_repr(service_id)}"


def nrc_repr(response_code: int) -> str:
    try:
        return f"{UDSErrorCodes(response_code).name} ({int_repr(response_code)})"
    except ValueError:
        return f"unknown response code {int_repr(response_code)}"


def did_repr(data_identifier: int) -> str:
    try:
        return f"{CommonDataIdentifiers(data_identifier).name} ({int_repr(data_identifier)})"
    except ValueError:
        return int_repr(data_identifier)
