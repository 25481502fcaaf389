"""Bitcoin address decoding and encoding: base58check and bech32/bech32m."""

from __future__ import annotations

import enum
import hashlib


class AddressError(ValueError):
    """Raised when an address cannot be parsed or encoded."""


class Network(enum.Enum):
    """Bitcoin networks, each with its bech32 human-readable part."""

    BITCOIN = "bitcoin"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def hrp(self) -> str:
        return _HRP_BY_NETWORK[self]


_HRP_BY_NETWORK = {
    Network.BITCOIN: "bc",
    Network.TESTNET: "tb",
    Network.SIGNET: "tb",
    Network.REGTEST: "bcrt",
}

_NETWORK_BY_HRP = {
    "bc": Network.BITCOIN,
    "tb": Network.TESTNET,
    "bcrt": Network.REGTEST,
}

_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3
_GENERATORS = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_MAX_BECH32_LENGTH = 90

_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_P2PKH_PREFIXES = frozenset({0x00, 0x6F})
_P2SH_PREFIXES = frozenset({0x05, 0xC4})


def _polymod(values: list[int]) -> int:
    checksum = 1
    for value in values:
        top = checksum >> 25
        checksum = ((checksum & 0x1FFFFFF) << 5) ^ value
        for bit, generator in enumerate(_GENERATORS):
            if (top >> bit) & 1:
                checksum ^= generator
    return checksum


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data, from_bits: int, to_bits: int, pad: bool) -> list[int]:
    accumulator = 0
    bits = 0
    result: list[int] = []
    max_value = (1 << to_bits) - 1
    for value in data:
        if value < 0 or value >> from_bits:
            raise AddressError("invalid data value in bit conversion")
        accumulator = (accumulator << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            result.append((accumulator >> bits) & max_value)
    if pad:
        if bits:
            result.append((accumulator << (to_bits - bits)) & max_value)
    elif bits >= from_bits or (accumulator << (to_bits - bits)) & max_value:
        raise AddressError("invalid padding in address data")
    return result


def _bech32_encode(hrp: str, data: list[int], const: int) -> str:
    modulus = _polymod(_hrp_expand(hrp) + data + [0] * 6) ^ const
    checksum = [(modulus >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_CHARSET[d] for d in data + checksum)


def _bech32_decode(text: str) -> tuple[str, list[int], int]:
    if any(ord(c) < 33 or ord(c) > 126 for c in text):
        raise AddressError("address contains invalid characters")
    if text.lower() != text and text.upper() != text:
        raise AddressError("address mixes upper and lower case")
    text = text.lower()
    separator = text.rfind("1")
    if separator < 1 or separator + 7 > len(text) or len(text) > _MAX_BECH32_LENGTH:
        raise AddressError("malformed bech32 string")
    hrp = text[:separator]
    try:
        data = [_CHARSET.index(c) for c in text[separator + 1:]]
    except ValueError as exc:
        raise AddressError("invalid bech32 character") from exc
    const = _polymod(_hrp_expand(hrp) + data)
    if const not in (_BECH32_CONST, _BECH32M_CONST):
        raise AddressError("invalid bech32 checksum")
    return hrp, data[:-6], const


def _validate_program(version: int, program: bytes) -> None:
    if not 0 <= version <= 16:
        raise AddressError(f"invalid witness version {version}")
    if not 2 <= len(program) <= 40:
        raise AddressError(f"invalid witness program length {len(program)}")
    if version == 0 and len(program) not in (20, 32):
        raise AddressError(
            f"invalid witness v0 program length {len(program)}; expected 20 or 32"
        )


def encode_segwit_address(version: int, program: bytes, network: Network) -> str:
    """Encode a witness program as a bech32 (v0) or bech32m (v1+) address."""
    program = bytes(program)
    _validate_program(version, program)
    const = _BECH32_CONST if version == 0 else _BECH32M_CONST
    return _bech32_encode(network.hrp, [version] + _convert_bits(program, 8, 5, True), const)


def decode_segwit_address(address: str) -> tuple[Network, int, bytes]:
    """Decode a segwit address into (network, witness version, program)."""
    hrp, data, const = _bech32_decode(address)
    network = _NETWORK_BY_HRP.get(hrp)
    if network is None:
        raise AddressError(f"unknown address prefix {hrp!r}")
    if not data:
        raise AddressError("address has no witness data")
    version = data[0]
    program = bytes(_convert_bits(data[1:], 5, 8, False))
    _validate_program(version, program)
    expected = _BECH32_CONST if version == 0 else _BECH32M_CONST
    if const != expected:
        raise AddressError("wrong checksum variant for witness version")
    return network, version, program


def _base58check_decode(text: str) -> bytes:
    number = 0
    for char in text:
        digit = _BASE58_ALPHABET.find(char)
        if digit < 0:
            raise AddressError(f"invalid base58 character {char!r}")
        number = number * 58 + digit
    leading_zeros = len(text) - len(text.lstrip("1"))
    raw = b"\x00" * leading_zeros + number.to_bytes((number.bit_length() + 7) // 8, "big")
    if len(raw) < 5:
        raise AddressError("base58 data too short")
    payload, checksum = raw[:-4], raw[-4:]
    if hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4] != checksum:
        raise AddressError("invalid base58 checksum")
    return payload


def script_pubkey_for(address: str) -> bytes:
    """Return the output script that pays to ``address`` (network not enforced)."""
    if not address:
        raise AddressError("empty address")
    lowered = address.lower()
    if any(lowered.startswith(hrp + "1") for hrp in _NETWORK_BY_HRP):
        _, version, program = decode_segwit_address(address)
        opcode = 0 if version == 0 else 0x50 + version
        return bytes([opcode, len(program)]) + program

    payload = _base58check_decode(address)
    if len(payload) != 21:
        raise AddressError("base58 address has wrong payload length")
    prefix, key_hash = payload[0], payload[1:]
    if prefix in _P2PKH_PREFIXES:
        return b"\x76\xa9\x14" + key_hash + b"\x88\xac"
    if prefix in _P2SH_PREFIXES:
        return b"\xa9\x14" + key_hash + b"\x87"
    raise AddressError(f"unknown base58 address version {prefix}")