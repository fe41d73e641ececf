# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

"""Seed to key transforms for the SecurityAccess (0x27) service.

Every transform takes the 32 bit seed received from the ECU and a 32 bit
constant supplied by the operator. The ECU runs the very same computation;
a single flipped bit yields a well formed request which the ECU answers with
``invalidKey``, so these functions are bit-exact ports and must not be
"simplified".
"""

from collections.abc import Callable

from ecudiag.services.uds.core.exception import UnsupportedSecurityLevel
from ecudiag.services.uds.core.utils import MASK32, rotate_left32, rotate_right32

ROUNDS = 32

Cipher = Callable[[int, int], int]


def compute_key_level1(seed: int, key: int) -> int:
    seed &= MASK32
    key &= MASK32
    token = seed ^ key

    for _ in range(ROUNDS):
        if token & 0x01:
            token = rotate_left32(token, 3) ^ seed
        else:
            token = rotate_right32(token, 7) ^ key

    return token


def compute_key_level2(seed: int, key: int) -> int:
    seed &= MASK32
    key &= MASK32
    token = seed ^ key

    for _ in range(ROUNDS):
        low_bit = token & 0x01
        token >>= 1
        token ^= seed if low_bit else key

    return token


def compute_key_level3(seed: int, key: int) -> int:
    seed &= MASK32
    key &= MASK32
    token = seed ^ key

    # The seed is never updated; all rounds compute the same token.
    for _ in range(ROUNDS):
        if seed & 0x80000000:
            # Same as rotating by one: the << 3 drops bit 31.
            token = ((((seed >> 1) ^ seed) << 3) & MASK32) ^ (seed >> 3)
        else:
            token = (seed >> 3) ^ ((seed << 9) & MASK32)
        token ^= key

    return rotate_left32(token, 15)


def compute_key_level4(seed: int, key: int) -> int:
    seed &= MASK32
    key &= MASK32
    token = seed ^ key

    for _ in range(ROUNDS):
        token = rotate_left32(token, 7) ^ key

    return token


# Maps the sendKey sub-function to its transform.
CIPHERS: dict[int, Cipher] = {
    0x02: compute_key_level1,
    0x04: compute_key_level2,
    0x06: compute_key_level3,
    0x08: compute_key_level4,
}


def compute_key(level: int, seed: int, key: int) -> int:
    """Computes the token for the sendKey sub-function ``level``."""
    try:
        cipher = CIPHERS[level]
    except KeyError:
        raise UnsupportedSecurityLevel(level) from None
    return cipher(seed, key)
