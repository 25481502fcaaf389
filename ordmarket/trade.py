"""Trustless listing, buying and mempool-protected sale flows built on PSBTs."""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass

from ordmarket.address import AddressError, Network, encode_segwit_address, script_pubkey_for
from ordmarket.keypair import KeyError_, MarketplaceKeypair, parse_public_key
from ordmarket.psbt import Psbt, PsbtError, PsbtInput, SighashType, decode_psbt, encode_psbt
from ordmarket.tx import OutPoint, Transaction, TxError, TxIn, TxOut

MIN_SELF_FUNDED = 343
"""Minimum inscription value (sats) that can pay its own locking fee."""

DEFAULT_LOCKING_TX_FEE_SATS = 13
"""Fee floor for the locking transaction when no fee rate is given."""

INSCRIPTION_DUST_SATS = 546
"""Value of the output that carries the inscription to the buyer."""

_MAX_SATS = (1 << 64) - 1

_OP_0 = 0x00
_OP_PUSHNUM_2 = 0x52
_OP_CHECKMULTISIG = 0xAE


@dataclass
class ListingRequest:
    inscription_txid: str
    inscription_vout: int
    seller_address: str
    price_sats: int


@dataclass
class ListingPsbt:
    psbt_hex: str
    inscription_txid: str
    inscription_vout: int


@dataclass
class BuyRequest:
    seller_psbt_hex: str
    buyer_address: str
    buyer_utxo_txid: str
    buyer_utxo_vout: int
    buyer_utxo_amount_sats: int
    fee_rate_sat_vb: float


@dataclass
class BuyPsbt:
    psbt_hex: str
    estimated_fee_sats: int


@dataclass
class LockingPsbtRequest:
    inscription_txid: str
    inscription_vout: int
    inscription_amount_sats: int
    seller_pubkey_hex: str
    marketplace_pubkey_hex: str
    network: Network
    fee_rate_sat_vb: float | None = None
    gas_txid: str | None = None
    gas_vout: int | None = None
    gas_amount_sats: int | None = None


@dataclass
class LockingPsbt:
    psbt_hex: str
    multisig_address: str
    multisig_script_hex: str


@dataclass
class ProtectedSalePsbtRequest:
    locking_raw_tx_hex: str
    multisig_vout: int
    multisig_script_hex: str
    seller_address: str
    price_sats: int
    buyer_address: str
    buyer_utxo_txid: str
    buyer_utxo_vout: int
    buyer_utxo_amount_sats: int
    fee_rate_sat_vb: float


@dataclass
class ProtectedSalePsbt:
    psbt_hex: str
    estimated_fee_sats: int
    locking_txid: str


def _estimate_tx_vbytes(n_inputs: int, n_outputs: int) -> int:
    return 10 + 41 * n_inputs + 31 * n_outputs


def _fee_for(vbytes: int, fee_rate: float) -> int:
    """Fee in sats, truncated and clamped the way a float-to-u64 cast is."""
    fee = vbytes * fee_rate
    if math.isnan(fee) or fee <= 0:
        return 0
    if math.isinf(fee) or fee >= _MAX_SATS:
        return _MAX_SATS
    return int(fee)


def _outpoint(txid: str, vout: int, what: str) -> OutPoint:
    try:
        return OutPoint(txid, vout)
    except TxError as exc:
        raise PsbtError(f"invalid {what}: {exc}") from exc


def _script_for(address: str, what: str) -> bytes:
    try:
        return script_pubkey_for(address)
    except AddressError as exc:
        raise PsbtError(f"invalid {what}: {exc}") from exc


def _public_key(text: str, what: str) -> bytes:
    try:
        return parse_public_key(text)
    except KeyError_ as exc:
        raise PsbtError(f"invalid {what}: {exc}") from exc


def _from_hex(text: str, what: str) -> bytes:
    try:
        return bytes.fromhex(text)
    except (ValueError, TypeError) as exc:
        raise PsbtError(f"invalid {what}: {exc}") from exc


def _p2wsh_script_pubkey(witness_script: bytes) -> bytes:
    return b"\x00\x20" + hashlib.sha256(witness_script).digest()


def _promote_partial_sigs(inputs: list[PsbtInput]) -> None:
    """Move partial signatures into a [sig, pubkey, ...] witness on unfinalized inputs."""
    for psbt_input in inputs:
        if psbt_input.final_script_sig is not None or psbt_input.final_script_witness is not None:
            continue
        if psbt_input.partial_sigs:
            psbt_input.final_script_witness = [
                item
                for pubkey, sig in sorted(psbt_input.partial_sigs.items())
                for item in (sig, pubkey)
            ]
            psbt_input.partial_sigs.clear()


def _extract_hex(psbt: Psbt, context: str) -> str:
    try:
        tx = psbt.extract_tx()
    except PsbtError as exc:
        raise PsbtError(f"{context}: {exc}") from exc
    return tx.serialize().hex()


def _first_input(psbt: Psbt) -> PsbtInput:
    if not psbt.inputs:
        raise PsbtError("PSBT has no inputs")
    return psbt.inputs[0]


def build_listing_psbt(req: ListingRequest) -> ListingPsbt:
    """Build the unsigned listing PSBT the seller signs with SIGHASH_SINGLE|ANYONECANPAY."""
    outpoint = _outpoint(req.inscription_txid, req.inscription_vout, "inscription txid")
    seller_script = _script_for(req.seller_address, "seller address")

    unsigned_tx = Transaction(
        inputs=[TxIn(previous_output=outpoint)],
        outputs=[TxOut(value=req.price_sats, script_pubkey=seller_script)],
    )
    psbt = Psbt.from_unsigned_tx(unsigned_tx)
    psbt.inputs[0].sighash_type = SighashType.SINGLE_ANYONECANPAY

    return ListingPsbt(
        psbt_hex=encode_psbt(psbt),
        inscription_txid=req.inscription_txid,
        inscription_vout=req.inscription_vout,
    )


def build_buy_psbt(req: BuyRequest) -> BuyPsbt:
    """Extend a seller's signed listing PSBT with the buyer's input, dust and change."""
    seller_psbt = decode_psbt(req.seller_psbt_hex)
    seller_tx = seller_psbt.unsigned_tx
    if len(seller_tx.inputs) != 1 or len(seller_tx.outputs) != 1:
        raise PsbtError("seller PSBT has unexpected structure: expected 1 input and 1 output")

    price_sats = seller_tx.outputs[0].value
    buyer_script = _script_for(req.buyer_address, "buyer address")

    estimated_fee_sats = _fee_for(_estimate_tx_vbytes(2, 3), req.fee_rate_sat_vb)
    total_required = price_sats + INSCRIPTION_DUST_SATS + estimated_fee_sats
    if req.buyer_utxo_amount_sats < total_required:
        raise PsbtError(
            f"buyer UTXO amount ({req.buyer_utxo_amount_sats} sats) is insufficient; "
            f"need at least {total_required} sats (price {price_sats} + dust "
            f"{INSCRIPTION_DUST_SATS} + fee {estimated_fee_sats})"
        )
    change_sats = req.buyer_utxo_amount_sats - total_required

    buyer_outpoint = _outpoint(req.buyer_utxo_txid, req.buyer_utxo_vout, "buyer UTXO txid")

    tx = Transaction(
        version=seller_tx.version,
        lock_time=seller_tx.lock_time,
        inputs=[*seller_tx.inputs, TxIn(previous_output=buyer_outpoint)],
        outputs=[
            *seller_tx.outputs,
            TxOut(value=INSCRIPTION_DUST_SATS, script_pubkey=buyer_script),
            TxOut(value=change_sats, script_pubkey=buyer_script),
        ],
    )
    psbt = Psbt.from_unsigned_tx(tx)
    psbt.inputs[0] = seller_psbt.inputs[0]
    psbt.outputs[0] = seller_psbt.outputs[0]
    # The buyer's wallet fills in the script when signing.
    psbt.inputs[1] = PsbtInput(
        witness_utxo=TxOut(value=req.buyer_utxo_amount_sats, script_pubkey=b"")
    )

    return BuyPsbt(psbt_hex=encode_psbt(psbt), estimated_fee_sats=estimated_fee_sats)


def finalize_and_extract(signed_psbt_hex: str) -> str:
    """Finalize a fully signed PSBT and return the raw transaction hex."""
    psbt = decode_psbt(signed_psbt_hex)
    _promote_partial_sigs(psbt.inputs)
    return _extract_hex(psbt, "failed to extract transaction from PSBT")


def build_multisig_redeem_script(seller_pk: bytes, marketplace_pk: bytes) -> bytes:
    """Build the 2-of-2 multisig witness script with BIP-67 sorted keys."""
    keys = [bytes(seller_pk), bytes(marketplace_pk)]
    if any(len(key) != 33 for key in keys):
        raise PsbtError("multisig keys must be 33-byte compressed public keys")
    first, second = sorted(keys)
    return (
        bytes([_OP_PUSHNUM_2, 33])
        + first
        + bytes([33])
        + second
        + bytes([_OP_PUSHNUM_2, _OP_CHECKMULTISIG])
    )


def p2wsh_address(witness_script: bytes, network: Network) -> str:
    """Derive the P2WSH address for a witness script."""
    return encode_segwit_address(0, hashlib.sha256(bytes(witness_script)).digest(), network)


def build_locking_psbt(req: LockingPsbtRequest) -> LockingPsbt:
    """Build the unsigned PSBT moving the inscription into the 2-of-2 multisig."""
    seller_pk = _public_key(req.seller_pubkey_hex, "seller_pubkey_hex")
    marketplace_pk = _public_key(req.marketplace_pubkey_hex, "marketplace_pubkey_hex")

    witness_script = build_multisig_redeem_script(seller_pk, marketplace_pk)
    multisig_address = p2wsh_address(witness_script, req.network)

    has_gas = req.gas_txid is not None
    n_inputs = 2 if has_gas else 1
    if req.fee_rate_sat_vb is not None:
        fee_sats = max(
            _fee_for(_estimate_tx_vbytes(n_inputs, 1), req.fee_rate_sat_vb),
            DEFAULT_LOCKING_TX_FEE_SATS,
        )
    else:
        fee_sats = DEFAULT_LOCKING_TX_FEE_SATS

    inscription_outpoint = _outpoint(
        req.inscription_txid, req.inscription_vout, "inscription_txid"
    )

    if has_gas:
        multisig_value = req.inscription_amount_sats + (req.gas_amount_sats or 0) - fee_sats
    else:
        if req.inscription_amount_sats < MIN_SELF_FUNDED:
            raise PsbtError(
                f"inscription value ({req.inscription_amount_sats} sats) is below "
                f"MIN_SELF_FUNDED ({MIN_SELF_FUNDED} sats); provide a gas UTXO"
            )
        multisig_value = req.inscription_amount_sats - fee_sats
    if multisig_value < 0:
        raise PsbtError(
            f"locking fee ({fee_sats} sats) exceeds the value available to the multisig output"
        )

    inputs = [TxIn(previous_output=inscription_outpoint)]
    if has_gas:
        gas_outpoint = _outpoint(req.gas_txid, req.gas_vout or 0, "gas_txid")
        inputs.append(TxIn(previous_output=gas_outpoint))

    unsigned_tx = Transaction(
        inputs=inputs,
        outputs=[TxOut(value=multisig_value, script_pubkey=_p2wsh_script_pubkey(witness_script))],
    )
    psbt = Psbt.from_unsigned_tx(unsigned_tx)
    for psbt_input in psbt.inputs:
        psbt_input.witness_script = witness_script

    return LockingPsbt(
        psbt_hex=encode_psbt(psbt),
        multisig_address=multisig_address,
        multisig_script_hex=witness_script.hex(),
    )


def build_protected_sale_psbt(req: ProtectedSalePsbtRequest) -> ProtectedSalePsbt:
    """Build the sale PSBT that spends the multisig output of the unbroadcast locking tx."""
    locking_bytes = _from_hex(req.locking_raw_tx_hex, "locking_raw_tx_hex")
    try:
        locking_tx = Transaction.from_bytes(locking_bytes)
    except TxError as exc:
        raise PsbtError(f"cannot deserialize locking tx: {exc}") from exc
    locking_txid = locking_tx.txid()

    if not 0 <= req.multisig_vout < len(locking_tx.outputs):
        raise PsbtError(f"locking tx has no output at vout {req.multisig_vout}")
    multisig_txout = locking_tx.outputs[req.multisig_vout]

    seller_script = _script_for(req.seller_address, "seller_address")
    buyer_script = _script_for(req.buyer_address, "buyer_address")
    witness_script = _from_hex(req.multisig_script_hex, "multisig_script_hex")

    estimated_fee_sats = _fee_for(_estimate_tx_vbytes(2, 3), req.fee_rate_sat_vb)
    total_required = req.price_sats + INSCRIPTION_DUST_SATS + estimated_fee_sats
    if req.buyer_utxo_amount_sats < total_required:
        raise PsbtError(
            f"buyer UTXO ({req.buyer_utxo_amount_sats} sats) insufficient; need "
            f"{total_required} sats (price {req.price_sats} + dust "
            f"{INSCRIPTION_DUST_SATS} + fee {estimated_fee_sats})"
        )
    change_sats = req.buyer_utxo_amount_sats - total_required

    multisig_outpoint = OutPoint(locking_txid, req.multisig_vout)
    buyer_outpoint = _outpoint(req.buyer_utxo_txid, req.buyer_utxo_vout, "buyer_utxo_txid")

    unsigned_tx = Transaction(
        inputs=[TxIn(previous_output=multisig_outpoint), TxIn(previous_output=buyer_outpoint)],
        outputs=[
            TxOut(value=req.price_sats, script_pubkey=seller_script),
            TxOut(value=INSCRIPTION_DUST_SATS, script_pubkey=buyer_script),
            TxOut(value=change_sats, script_pubkey=buyer_script),
        ],
    )
    psbt = Psbt.from_unsigned_tx(unsigned_tx)
    psbt.inputs[0].sighash_type = SighashType.SINGLE_ANYONECANPAY
    psbt.inputs[0].witness_utxo = TxOut(
        value=multisig_txout.value, script_pubkey=multisig_txout.script_pubkey
    )
    psbt.inputs[0].witness_script = witness_script
    psbt.inputs[1] = PsbtInput(
        witness_utxo=TxOut(value=req.buyer_utxo_amount_sats, script_pubkey=b"")
    )

    return ProtectedSalePsbt(
        psbt_hex=encode_psbt(psbt),
        estimated_fee_sats=estimated_fee_sats,
        locking_txid=locking_txid,
    )


def apply_marketplace_signature(psbt_hex: str, marketplace_keypair: MarketplaceKeypair) -> str:
    """Add the marketplace's SIGHASH_ALL co-signature to input 0 of a protected sale PSBT."""
    psbt = decode_psbt(psbt_hex)
    first = _first_input(psbt)
    if first.witness_script is None:
        raise PsbtError("input 0 missing witness_script")
    if first.witness_utxo is None:
        raise PsbtError("input 0 missing witness_utxo")

    try:
        sighash = psbt.unsigned_tx.p2wsh_signature_hash(
            0, first.witness_script, first.witness_utxo.value, SighashType.ALL
        )
    except TxError as exc:
        raise PsbtError(f"sighash computation failed: {exc}") from exc

    signature = marketplace_keypair.sign_sighash(sighash) + bytes([SighashType.ALL])
    first.partial_sigs[marketplace_keypair.public_key()] = signature
    return encode_psbt(psbt)


def finalize_multisig_and_extract(
    psbt_hex: str, seller_pubkey_hex: str, marketplace_pubkey_hex: str
) -> str:
    """Build the 2-of-2 witness for input 0, finalize the rest, and return raw tx hex."""
    psbt = decode_psbt(psbt_hex)
    first = _first_input(psbt)
    if first.witness_script is None:
        raise PsbtError("input 0 missing witness_script")
    witness_script = first.witness_script

    seller_compressed = _public_key(seller_pubkey_hex, "seller_pubkey_hex")
    marketplace_compressed = _public_key(marketplace_pubkey_hex, "marketplace_pubkey_hex")
    seller_key = bytes.fromhex(seller_pubkey_hex)
    marketplace_key = bytes.fromhex(marketplace_pubkey_hex)

    seller_sig = first.partial_sigs.get(seller_key)
    if seller_sig is None:
        raise PsbtError("seller signature missing from PSBT input 0")
    marketplace_sig = first.partial_sigs.get(marketplace_key)
    if marketplace_sig is None:
        raise PsbtError("marketplace signature missing from PSBT input 0")

    if seller_compressed <= marketplace_compressed:
        first_sig, second_sig = seller_sig, marketplace_sig
    else:
        first_sig, second_sig = marketplace_sig, seller_sig

    # The leading empty item is consumed by CHECKMULTISIG's extra pop.
    first.final_script_witness = [b"", first_sig, second_sig, witness_script]
    first.partial_sigs.clear()
    first.witness_script = None

    _promote_partial_sigs(psbt.inputs[1:])
    return _extract_hex(psbt, "failed to extract finalized tx")


def finalize_locking_psbt(signed_psbt_hex: str) -> str:
    """Finalize a seller-signed locking PSBT and return the raw transaction hex."""
    psbt = decode_psbt(signed_psbt_hex)
    _promote_partial_sigs(psbt.inputs)
    return _extract_hex(psbt, "failed to extract locking tx")