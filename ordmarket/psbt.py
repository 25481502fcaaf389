"""Partially signed Bitcoin transactions (BIP-174, version 0)."""

from __future__ import annotations

import binascii
import enum
import struct
from dataclasses import dataclass, field

from ordmarket.tx import Transaction, TxError, TxOut

MAGIC = b"psbt\xff"

# Highest fee rate extract_tx accepts: 25,000 sat/vB expressed in sat per 1000 weight units.
_MAX_FEE_RATE_SAT_PER_KWU = 25_000 * 250

_GLOBAL_UNSIGNED_TX = 0x00
_GLOBAL_VERSION = 0xFB

_IN_NON_WITNESS_UTXO = 0x00
_IN_WITNESS_UTXO = 0x01
_IN_PARTIAL_SIG = 0x02
_IN_SIGHASH_TYPE = 0x03
_IN_REDEEM_SCRIPT = 0x04
_IN_WITNESS_SCRIPT = 0x05
_IN_FINAL_SCRIPT_SIG = 0x07
_IN_FINAL_SCRIPT_WITNESS = 0x08

_OUT_REDEEM_SCRIPT = 0x00
_OUT_WITNESS_SCRIPT = 0x01


class PsbtError(ValueError):
    """Raised for malformed PSBTs or PSBTs that cannot be completed."""


class SighashType(enum.IntEnum):
    """Standard ECDSA signature hash types."""

    ALL = 0x01
    NONE = 0x02
    SINGLE = 0x03
    ALL_ANYONECANPAY = 0x81
    NONE_ANYONECANPAY = 0x82
    SINGLE_ANYONECANPAY = 0x83


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

    def take(self, n: int) -> bytes:
        if n > self.remaining:
            raise PsbtError("unexpected end of PSBT data")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def compact_size(self) -> int:
        prefix = self.take(1)[0]
        if prefix < 0xFD:
            return prefix
        width, minimum = {0xFD: (2, 0xFD), 0xFE: (4, 0x10000), 0xFF: (8, 0x100000000)}[prefix]
        value = int.from_bytes(self.take(width), "little")
        if value < minimum:
            raise PsbtError("non-minimal compact size encoding")
        return value

    def var_bytes(self) -> bytes:
        return self.take(self.compact_size())

    def rest(self) -> bytes:
        return self.take(self.remaining)


def _entry(key_type: int, key_data: bytes, value: bytes) -> bytes:
    return _var_bytes(_compact_size(key_type) + key_data) + _var_bytes(value)


def _raw_entry(key: bytes, value: bytes) -> bytes:
    return _var_bytes(key) + _var_bytes(value)


def _read_map(reader: _Reader) -> list[tuple[int, bytes, bytes, bytes]]:
    """Read one key-value map; returns (key type, key data, full key, value) tuples."""
    entries = []
    seen: set[bytes] = set()
    while True:
        key = reader.var_bytes()
        if not key:
            return entries
        if key in seen:
            raise PsbtError(f"duplicate key {key.hex()} in PSBT map")
        seen.add(key)
        value = reader.var_bytes()
        key_reader = _Reader(key)
        key_type = key_reader.compact_size()
        entries.append((key_type, key_reader.rest(), key, value))


def _require_empty_key(key_type: int, key_data: bytes) -> None:
    if key_data:
        raise PsbtError(f"unexpected key data for key type {key_type:#x}")


def _encode_txout(txout: TxOut) -> bytes:
    return struct.pack("<Q", txout.value) + _var_bytes(txout.script_pubkey)


def _decode_txout(data: bytes) -> TxOut:
    reader = _Reader(data)
    value = struct.unpack("<Q", reader.take(8))[0]
    script = reader.var_bytes()
    if reader.remaining:
        raise PsbtError("trailing bytes in witness UTXO")
    return TxOut(value=value, script_pubkey=script)


def _encode_witness(items: list[bytes]) -> bytes:
    return _compact_size(len(items)) + b"".join(_var_bytes(item) for item in items)


def _decode_witness(data: bytes) -> list[bytes]:
    reader = _Reader(data)
    items = [reader.var_bytes() for _ in range(reader.compact_size())]
    if reader.remaining:
        raise PsbtError("trailing bytes in final script witness")
    return items


def _check_unsigned(tx: Transaction) -> None:
    if any(txin.script_sig or txin.witness for txin in tx.inputs):
        raise PsbtError("unsigned transaction has non-empty script_sig or witness")


@dataclass
class PsbtInput:
    """Per-input PSBT data. ``partial_sigs`` maps public keys to signatures."""

    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOut | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def _encode(self) -> bytes:
        parts = []
        if self.non_witness_utxo is not None:
            parts.append(_entry(_IN_NON_WITNESS_UTXO, b"", self.non_witness_utxo.serialize()))
        if self.witness_utxo is not None:
            parts.append(_entry(_IN_WITNESS_UTXO, b"", _encode_txout(self.witness_utxo)))
        for pubkey in sorted(self.partial_sigs):
            parts.append(_entry(_IN_PARTIAL_SIG, pubkey, self.partial_sigs[pubkey]))
        if self.sighash_type is not None:
            parts.append(_entry(_IN_SIGHASH_TYPE, b"", struct.pack("<I", int(self.sighash_type))))
        if self.redeem_script is not None:
            parts.append(_entry(_IN_REDEEM_SCRIPT, b"", self.redeem_script))
        if self.witness_script is not None:
            parts.append(_entry(_IN_WITNESS_SCRIPT, b"", self.witness_script))
        if self.final_script_sig is not None:
            parts.append(_entry(_IN_FINAL_SCRIPT_SIG, b"", self.final_script_sig))
        if self.final_script_witness is not None:
            parts.append(
                _entry(_IN_FINAL_SCRIPT_WITNESS, b"", _encode_witness(self.final_script_witness))
            )
        parts.extend(_raw_entry(key, self.unknown[key]) for key in sorted(self.unknown))
        parts.append(b"\x00")
        return b"".join(parts)

    @classmethod
    def _decode(cls, entries: list[tuple[int, bytes, bytes, bytes]]) -> "PsbtInput":
        psbt_input = cls()
        for key_type, key_data, key, value in entries:
            if key_type == _IN_NON_WITNESS_UTXO:
                _require_empty_key(key_type, key_data)
                try:
                    psbt_input.non_witness_utxo = Transaction.from_bytes(value)
                except TxError as exc:
                    raise PsbtError(f"invalid non-witness UTXO: {exc}") from exc
            elif key_type == _IN_WITNESS_UTXO:
                _require_empty_key(key_type, key_data)
                psbt_input.witness_utxo = _decode_txout(value)
            elif key_type == _IN_PARTIAL_SIG:
                if len(key_data) not in (33, 65):
                    raise PsbtError(f"invalid public key length {len(key_data)} in partial sig")
                if not value:
                    raise PsbtError("empty partial signature")
                psbt_input.partial_sigs[key_data] = value
            elif key_type == _IN_SIGHASH_TYPE:
                _require_empty_key(key_type, key_data)
                if len(value) != 4:
                    raise PsbtError("sighash type must be 4 bytes")
                raw = struct.unpack("<I", value)[0]
                try:
                    psbt_input.sighash_type = SighashType(raw)
                except ValueError:
                    psbt_input.sighash_type = raw
            elif key_type == _IN_REDEEM_SCRIPT:
                _require_empty_key(key_type, key_data)
                psbt_input.redeem_script = value
            elif key_type == _IN_WITNESS_SCRIPT:
                _require_empty_key(key_type, key_data)
                psbt_input.witness_script = value
            elif key_type == _IN_FINAL_SCRIPT_SIG:
                _require_empty_key(key_type, key_data)
                psbt_input.final_script_sig = value
            elif key_type == _IN_FINAL_SCRIPT_WITNESS:
                _require_empty_key(key_type, key_data)
                psbt_input.final_script_witness = _decode_witness(value)
            else:
                psbt_input.unknown[key] = value
        return psbt_input


@dataclass
class PsbtOutput:
    """Per-output PSBT data."""

    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def _encode(self) -> bytes:
        parts = []
        if self.redeem_script is not None:
            parts.append(_entry(_OUT_REDEEM_SCRIPT, b"", self.redeem_script))
        if self.witness_script is not None:
            parts.append(_entry(_OUT_WITNESS_SCRIPT, b"", self.witness_script))
        parts.extend(_raw_entry(key, self.unknown[key]) for key in sorted(self.unknown))
        parts.append(b"\x00")
        return b"".join(parts)

    @classmethod
    def _decode(cls, entries: list[tuple[int, bytes, bytes, bytes]]) -> "PsbtOutput":
        psbt_output = cls()
        for key_type, key_data, key, value in entries:
            if key_type == _OUT_REDEEM_SCRIPT:
                _require_empty_key(key_type, key_data)
                psbt_output.redeem_script = value
            elif key_type == _OUT_WITNESS_SCRIPT:
                _require_empty_key(key_type, key_data)
                psbt_output.witness_script = value
            else:
                psbt_output.unknown[key] = value
        return psbt_output


@dataclass
class Psbt:
    """A PSBT: the unsigned transaction plus one data map per input and output."""

    unsigned_tx: Transaction
    inputs: list[PsbtInput]
    outputs: list[PsbtOutput]
    version: int = 0
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_unsigned_tx(cls, tx: Transaction) -> "Psbt":
        """Wrap an unsigned transaction in a PSBT with empty input and output maps."""
        _check_unsigned(tx)
        return cls(
            unsigned_tx=tx,
            inputs=[PsbtInput() for _ in tx.inputs],
            outputs=[PsbtOutput() for _ in tx.outputs],
        )

    def serialize(self) -> bytes:
        parts = [MAGIC, _entry(_GLOBAL_UNSIGNED_TX, b"", self.unsigned_tx.serialize(False))]
        if self.version:
            parts.append(_entry(_GLOBAL_VERSION, b"", struct.pack("<I", self.version)))
        parts.extend(_raw_entry(key, self.unknown[key]) for key in sorted(self.unknown))
        parts.append(b"\x00")
        parts.extend(psbt_input._encode() for psbt_input in self.inputs)
        parts.extend(psbt_output._encode() for psbt_output in self.outputs)
        return b"".join(parts)

    @classmethod
    def deserialize(cls, data: bytes) -> "Psbt":
        """Parse a binary PSBT; the whole buffer must be used."""
        reader = _Reader(bytes(data))
        if reader.take(len(MAGIC)) != MAGIC:
            raise PsbtError("invalid PSBT magic bytes")

        unsigned_tx: Transaction | None = None
        version = 0
        unknown: dict[bytes, bytes] = {}
        for key_type, key_data, key, value in _read_map(reader):
            if key_type == _GLOBAL_UNSIGNED_TX:
                _require_empty_key(key_type, key_data)
                try:
                    unsigned_tx = Transaction.from_bytes(value)
                except TxError as exc:
                    raise PsbtError(f"invalid unsigned transaction: {exc}") from exc
                _check_unsigned(unsigned_tx)
            elif key_type == _GLOBAL_VERSION:
                _require_empty_key(key_type, key_data)
                if len(value) != 4:
                    raise PsbtError("PSBT version must be 4 bytes")
                version = struct.unpack("<I", value)[0]
            else:
                unknown[key] = value
        if unsigned_tx is None:
            raise PsbtError("PSBT is missing the unsigned transaction")

        inputs = [PsbtInput._decode(_read_map(reader)) for _ in unsigned_tx.inputs]
        outputs = [PsbtOutput._decode(_read_map(reader)) for _ in unsigned_tx.outputs]
        if reader.remaining:
            raise PsbtError(f"{reader.remaining} trailing bytes after PSBT")
        return cls(
            unsigned_tx=unsigned_tx,
            inputs=inputs,
            outputs=outputs,
            version=version,
            unknown=unknown,
        )

    def _spent_value(self, index: int) -> int:
        psbt_input = self.inputs[index]
        if psbt_input.witness_utxo is not None:
            return psbt_input.witness_utxo.value
        if psbt_input.non_witness_utxo is not None:
            vout = self.unsigned_tx.inputs[index].previous_output.vout
            outputs = psbt_input.non_witness_utxo.outputs
            if vout >= len(outputs):
                raise PsbtError(f"input {index} spends output {vout} that does not exist")
            return outputs[vout].value
        raise PsbtError(f"input {index} is missing its UTXO value")

    def extract_tx(self) -> Transaction:
        """Build the final transaction from finalized inputs, refusing absurd fees."""
        if len(self.inputs) != len(self.unsigned_tx.inputs):
            raise PsbtError("PSBT input maps do not match the transaction inputs")
        input_total = sum(self._spent_value(i) for i in range(len(self.inputs)))
        output_total = sum(txout.value for txout in self.unsigned_tx.outputs)
        if output_total > input_total:
            raise PsbtError(
                f"outputs ({output_total} sats) exceed inputs ({input_total} sats)"
            )

        tx = Transaction(
            version=self.unsigned_tx.version,
            lock_time=self.unsigned_tx.lock_time,
            inputs=[
                type(txin)(
                    previous_output=txin.previous_output,
                    script_sig=psbt_input.final_script_sig or b"",
                    sequence=txin.sequence,
                    witness=list(psbt_input.final_script_witness or []),
                )
                for txin, psbt_input in zip(self.unsigned_tx.inputs, self.inputs)
            ],
            outputs=[
                TxOut(value=txout.value, script_pubkey=txout.script_pubkey)
                for txout in self.unsigned_tx.outputs
            ],
        )

        weight = len(tx.serialize(False)) * 3 + len(tx.serialize())
        fee = input_total - output_total
        if fee * 1000 // weight > _MAX_FEE_RATE_SAT_PER_KWU:
            raise PsbtError(f"absurd fee rate: fee of {fee} sats for weight {weight}")
        return tx


def decode_psbt(text: str) -> Psbt:
    """Parse a hex-encoded PSBT."""
    try:
        raw = binascii.unhexlify(text)
    except (binascii.Error, TypeError) as exc:
        raise PsbtError(f"invalid hex: {exc}") from exc
    return Psbt.deserialize(raw)


def encode_psbt(psbt: Psbt) -> str:
    """Hex-encode a PSBT."""
    return psbt.serialize().hex()