# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any

from ecudiag.log import Loglevel

_WHITESPACE = re.compile(r"\s+")


def auto_int(arg: str) -> int:
    return int(arg, 0)


def hex_int(arg: str | int) -> int:
    """Parses a hex string with or without ``0x`` prefix, e.g. ``0e80``."""
    if isinstance(arg, int):
        return arg
    return int(arg.strip(), 16)


def hex_to_bytes(hex_str: str) -> bytes:
    """Converts a hex string such as ``"02 fd 80 01"`` or ``"0x02fd"`` to bytes.
    Whitespace is ignored; the remaining string must have an even length.
    """
    clean = _WHITESPACE.sub("", hex_str)
    if clean[:2].lower() == "0x":
        clean = clean[2:]
    if len(clean) % 2 != 0:
        raise ValueError("hex string length must be even")
    try:
        return bytes.fromhex(clean)
    except ValueError:
        raise ValueError(f"invalid hex string: {hex_str!r}") from None


def bytes_to_hex(data: bytes) -> str:
    return data.hex(" ")


def hexdump(data: bytes, bytes_per_line: int = 32) -> Iterator[str]:
    """Yields lines like ``0x0000: 02 fd 80 01``."""
    for offset in range(0, len(data), bytes_per_line):
        chunk = data[offset : offset + bytes_per_line]
        yield f"0x{offset:04x}: {chunk.hex(' ')}"


def bytes_to_ascii_with_escape(data: bytes) -> str:
    """Printable ASCII stays as is, everything else is rendered as ``\\xNN``."""
    return "".join(chr(b) if 0x20 <= b <= 0x7E else f"\\x{b:02x}" for b in data)


def get_log_level(args: Any) -> Loglevel:
    level = Loglevel.INFO
    if hasattr(args, "verbose"):
        if args.verbose == 1:
            level = Loglevel.DEBUG
        elif args.verbose >= 2:
            level = Loglevel.TRACE
    return level


def get_file_log_level(args: Any) -> Loglevel:
    level = Loglevel.DEBUG
    if hasattr(args, "verbose") and args.verbose >= 2:
        level = Loglevel.TRACE
    return level
