"""Bitcoin transactions: consensus encoding, txids and BIP-143 signature hashes."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field


class TxError(ValueError):
    """Raised for malformed transactions or invalid transaction data."""


RBF_NO_LOCKTIME_SEQUENCE = 0xFFFFFFFD

_SIGHASH_NONE = 0x02
_SIGHASH_SINGLE = 0x03
_SIGHASH_ANYONECANPAY = 0x80
_VALID_SIGHASH_TYPES = frozenset({0x01, 0x02, 0x03, 0x81, 0x82, 0x83})


def _hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _compact_size(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def _var_bytes(data: bytes) -> bytes:
    return _compact_size(len(data)) + data


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def peek(self, n: int) -> bytes:
        return self._data[self._pos:self._pos + n]

    def take(self, n: int) -> bytes:
        if n > self.remaining:
            raise TxError("unexpected end of transaction data")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def i32(self) -> int:
        return struct.unpack("<i", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def compact_size(self) -> int:
        prefix = self.take(1)[0]
        if prefix < 0xFD:
            return prefix
        width, minimum = {0xFD: (2, 0xFD), 0xFE: (4, 0x10000), 0xFF: (8, 0x100000000)}[prefix]
        value = int.from_bytes(self.take(width), "little")
        if value < minimum:
            raise TxError("non-minimal compact size encoding")
        return value

    def var_bytes(self) -> bytes:
        return self.take(self.compact_size())


def parse_txid(text: str) -> bytes:
    """Parse a displayed txid (64 hex chars) into its internal byte order."""
    if not isinstance(text, str) or len(text) != 64:
        raise TxError(f"invalid txid {text!r}: expected 64 hex characters")
    try:
        raw = bytes.fromhex(text)
    except ValueError as exc:
        raise TxError(f"invalid txid {text!r}: {exc}") from exc
    if len(raw) != 32:
        raise TxError(f"invalid txid {text!r}")
    return raw[::-1]


@dataclass(frozen=True)
class OutPoint:
    """Reference to a transaction output; ``txid`` is in display hex form."""

    txid: str
    vout: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", parse_txid(self.txid)[::-1].hex())
        if not 0 <= self.vout <= 0xFFFFFFFF:
            raise TxError(f"vout {self.vout} out of range")

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    def _encode(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxIn:
    previous_output: OutPoint
    script_sig: bytes = b""
    sequence: int = RBF_NO_LOCKTIME_SEQUENCE
    witness: list[bytes] = field(default_factory=list)

    def _encode(self) -> bytes:
        return (
            self.previous_output._encode()
            + _var_bytes(self.script_sig)
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def __post_init__(self) -> None:
        if not 0 <= self.value < 1 << 64:
            raise TxError(f"output value {self.value} out of range")

    def _encode(self) -> bytes:
        return struct.pack("<Q", self.value) + _var_bytes(self.script_pubkey)


@dataclass
class Transaction:
    version: int = 2
    lock_time: int = 0
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)

    def serialize(self, include_witness: bool = True) -> bytes:
        """Consensus-encode the transaction, in segwit form when witnesses exist."""
        segwit = include_witness and any(txin.witness for txin in self.inputs)
        parts = [struct.pack("<i", self.version)]
        if segwit:
            parts.append(b"\x00\x01")
        parts.append(_compact_size(len(self.inputs)))
        parts.extend(txin._encode() for txin in self.inputs)
        parts.append(_compact_size(len(self.outputs)))
        parts.extend(txout._encode() for txout in self.outputs)
        if segwit:
            for txin in self.inputs:
                parts.append(_compact_size(len(txin.witness)))
                parts.extend(_var_bytes(item) for item in txin.witness)
        parts.append(struct.pack("<I", self.lock_time))
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Transaction":
        """Decode a consensus-encoded transaction; the whole buffer must be used."""
        reader = _Reader(bytes(data))
        version = reader.i32()
        segwit = reader.peek(2) == b"\x00\x01"
        if segwit:
            reader.take(2)
        inputs = [
            TxIn(
                previous_output=OutPoint(reader.take(32)[::-1].hex(), reader.u32()),
                script_sig=reader.var_bytes(),
                sequence=reader.u32(),
            )
            for _ in range(reader.compact_size())
        ]
        outputs = [
            TxOut(value=reader.u64(), script_pubkey=reader.var_bytes())
            for _ in range(reader.compact_size())
        ]
        if segwit:
            for txin in inputs:
                txin.witness = [reader.var_bytes() for _ in range(reader.compact_size())]
            if not any(txin.witness for txin in inputs):
                raise TxError("witness flag set but no witnesses present")
        lock_time = reader.u32()
        if reader.remaining:
            raise TxError(f"{reader.remaining} trailing bytes after transaction")
        return cls(version=version, lock_time=lock_time, inputs=inputs, outputs=outputs)

    def txid(self) -> str:
        """Return the transaction id in display hex form."""
        return _hash256(self.serialize(include_witness=False))[::-1].hex()

    def p2wsh_signature_hash(
        self, input_index: int, witness_script: bytes, value: int, sighash_type: int
    ) -> bytes:
        """Compute the BIP-143 signature hash for a P2WSH input."""
        if not 0 <= input_index < len(self.inputs):
            raise TxError(
                f"input index {input_index} out of range for {len(self.inputs)} inputs"
            )
        if sighash_type not in _VALID_SIGHASH_TYPES:
            raise TxError(f"invalid sighash type {sighash_type:#x}")

        base_type = sighash_type & 0x1F
        anyone_can_pay = bool(sighash_type & _SIGHASH_ANYONECANPAY)
        zero = bytes(32)

        hash_prevouts = (
            zero
            if anyone_can_pay
            else _hash256(b"".join(txin.previous_output._encode() for txin in self.inputs))
        )
        if anyone_can_pay or base_type in (_SIGHASH_SINGLE, _SIGHASH_NONE):
            hash_sequence = zero
        else:
            hash_sequence = _hash256(
                b"".join(struct.pack("<I", txin.sequence) for txin in self.inputs)
            )
        if base_type not in (_SIGHASH_SINGLE, _SIGHASH_NONE):
            hash_outputs = _hash256(b"".join(txout._encode() for txout in self.outputs))
        elif base_type == _SIGHASH_SINGLE and input_index < len(self.outputs):
            hash_outputs = _hash256(self.outputs[input_index]._encode())
        else:
            hash_outputs = zero

        txin = self.inputs[input_index]
        preimage = b"".join(
            [
                struct.pack("<i", self.version),
                hash_prevouts,
                hash_sequence,
                txin.previous_output._encode(),
                _var_bytes(bytes(witness_script)),
                struct.pack("<Q", value),
                struct.pack("<I", txin.sequence),
                hash_outputs,
                struct.pack("<I", self.lock_time),
                struct.pack("<I", sighash_type),
            ]
        )
        return _hash256(preimage)