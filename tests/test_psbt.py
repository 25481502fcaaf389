import pytest

from ordmarket.psbt import (
    MAGIC,
    Psbt,
    PsbtError,
    PsbtInput,
    SighashType,
    decode_psbt,
    encode_psbt,
)
from ordmarket.tx import OutPoint, Transaction, TxIn, TxOut

FAKE_TXID = "0000000000000000000000000000000000000000000000000000000000000001"
P2WPKH_SCRIPT = b"\x00\x14" + bytes(20)
PUBKEY = b"\x02" + bytes(range(32))


def make_tx(output_value=1000):
    return Transaction(
        inputs=[TxIn(previous_output=OutPoint(FAKE_TXID, 0))],
        outputs=[TxOut(value=output_value, script_pubkey=P2WPKH_SCRIPT)],
    )


def test_serialize_layout_of_empty_maps():
    tx = make_tx()
    psbt = Psbt.from_unsigned_tx(tx)
    tx_bytes = tx.serialize(False)
    expected = MAGIC + b"\x01\x00" + bytes([len(tx_bytes)]) + tx_bytes + b"\x00\x00\x00"
    assert psbt.serialize() == expected
    assert psbt.serialize().startswith(b"psbt\xff")


def test_roundtrip_preserves_fields():
    psbt = Psbt.from_unsigned_tx(make_tx())
    psbt.inputs[0].sighash_type = SighashType.SINGLE_ANYONECANPAY
    psbt.inputs[0].witness_utxo = TxOut(value=5000, script_pubkey=P2WPKH_SCRIPT)
    psbt.inputs[0].witness_script = b"\x52\xae"
    psbt.inputs[0].partial_sigs[PUBKEY] = b"\x30\x01\x83"
    psbt.inputs[0].unknown[b"\xfc\x01"] = b"data"
    psbt.outputs[0].witness_script = b"\x51"

    decoded = decode_psbt(encode_psbt(psbt))
    assert decoded.inputs[0].sighash_type is SighashType.SINGLE_ANYONECANPAY
    assert decoded.inputs[0].witness_utxo == TxOut(value=5000, script_pubkey=P2WPKH_SCRIPT)
    assert decoded.inputs[0].witness_script == b"\x52\xae"
    assert decoded.inputs[0].partial_sigs == {PUBKEY: b"\x30\x01\x83"}
    assert decoded.inputs[0].unknown == {b"\xfc\x01": b"data"}
    assert decoded.outputs[0].witness_script == b"\x51"
    assert decoded.unsigned_tx.txid() == psbt.unsigned_tx.txid()
    assert encode_psbt(decoded) == encode_psbt(psbt)


def test_final_witness_roundtrip():
    psbt = Psbt.from_unsigned_tx(make_tx())
    psbt.inputs[0].final_script_witness = [b"", b"\x01\x02", b"\x03"]
    decoded = Psbt.deserialize(psbt.serialize())
    assert decoded.inputs[0].final_script_witness == [b"", b"\x01\x02", b"\x03"]


def test_nonstandard_sighash_type_kept_as_int():
    psbt = Psbt.from_unsigned_tx(make_tx())
    psbt.inputs[0].sighash_type = 0x41
    decoded = Psbt.deserialize(psbt.serialize())
    assert decoded.inputs[0].sighash_type == 0x41


def test_version_roundtrip():
    psbt = Psbt.from_unsigned_tx(make_tx())
    psbt.version = 2
    assert Psbt.deserialize(psbt.serialize()).version == 2


def test_from_unsigned_tx_rejects_script_sig():
    tx = make_tx()
    tx.inputs[0].script_sig = b"\x51"
    with pytest.raises(PsbtError):
        Psbt.from_unsigned_tx(tx)


def test_from_unsigned_tx_creates_one_map_per_input_and_output():
    tx = make_tx()
    tx.outputs.append(TxOut(value=1, script_pubkey=P2WPKH_SCRIPT))
    psbt = Psbt.from_unsigned_tx(tx)
    assert len(psbt.inputs) == 1
    assert len(psbt.outputs) == 2
    assert psbt.inputs[0] == PsbtInput()


def test_decode_invalid_hex():
    with pytest.raises(PsbtError):
        decode_psbt("gg")


def test_decode_invalid_psbt_bytes():
    with pytest.raises(PsbtError):
        decode_psbt("deadbeef")


def test_missing_unsigned_tx():
    with pytest.raises(PsbtError):
        Psbt.deserialize(MAGIC + b"\x00")


def test_truncated_data():
    data = Psbt.from_unsigned_tx(make_tx()).serialize()
    with pytest.raises(PsbtError):
        Psbt.deserialize(data[:-1])


def test_trailing_data():
    data = Psbt.from_unsigned_tx(make_tx()).serialize()
    with pytest.raises(PsbtError):
        Psbt.deserialize(data + b"\x00")


def test_duplicate_global_key():
    tx_bytes = make_tx().serialize(False)
    entry = b"\x01\x00" + bytes([len(tx_bytes)]) + tx_bytes
    data = MAGIC + entry + entry + b"\x00\x00\x00"
    with pytest.raises(PsbtError):
        Psbt.deserialize(data)


def test_partial_sig_with_bad_pubkey_length():
    psbt = Psbt.from_unsigned_tx(make_tx())
    psbt.inputs[0].partial_sigs[b"\x02" * 10] = b"\x30"
    with pytest.raises(PsbtError):
        Psbt.deserialize(psbt.serialize())


def test_extract_tx_applies_final_fields():
    psbt = Psbt.from_unsigned_tx(make_tx(output_value=1000))
    psbt.inputs[0].witness_utxo = TxOut(value=2000, script_pubkey=P2WPKH_SCRIPT)
    psbt.inputs[0].final_script_witness = [b"\x01", b"\x02"]
    tx = psbt.extract_tx()
    assert tx.inputs[0].witness == [b"\x01", b"\x02"]
    assert tx.inputs[0].script_sig == b""
    assert tx.txid() == psbt.unsigned_tx.txid()
    assert Transaction.from_bytes(tx.serialize()).inputs[0].witness == [b"\x01", b"\x02"]


def test_extract_tx_uses_non_witness_utxo():
    prev = Transaction(
        inputs=[TxIn(previous_output=OutPoint(FAKE_TXID, 5))],
        outputs=[TxOut(value=3000, script_pubkey=P2WPKH_SCRIPT)],
    )
    psbt = Psbt.from_unsigned_tx(make_tx(output_value=1000))
    psbt.inputs[0].non_witness_utxo = prev
    psbt.inputs[0].final_script_sig = b"\x51"
    tx = psbt.extract_tx()
    assert tx.inputs[0].script_sig == b"\x51"


def test_extract_tx_missing_utxo():
    psbt = Psbt.from_unsigned_tx(make_tx())
    with pytest.raises(PsbtError):
        psbt.extract_tx()


def test_extract_tx_outputs_exceed_inputs():
    psbt = Psbt.from_unsigned_tx(make_tx(output_value=1000))
    psbt.inputs[0].witness_utxo = TxOut(value=500, script_pubkey=P2WPKH_SCRIPT)
    with pytest.raises(PsbtError):
        psbt.extract_tx()


def test_extract_tx_absurd_fee():
    psbt = Psbt.from_unsigned_tx(make_tx(output_value=1000))
    psbt.inputs[0].witness_utxo = TxOut(value=1_000_000_000, script_pubkey=P2WPKH_SCRIPT)
    with pytest.raises(PsbtError):
        psbt.extract_tx()