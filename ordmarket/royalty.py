"""Creator royalties: computing the amount owed and checking PSBTs pay it."""

from __future__ import annotations

from dataclasses import dataclass

from ordmarket.address import AddressError, script_pubkey_for
from ordmarket.psbt import Psbt, PsbtError

BPS_DENOMINATOR = 10_000
"""Basis points in one whole (100 bps = 1%)."""


class RoyaltyError(ValueError):
    """Raised when a PSBT cannot be checked or lacks the required royalty output."""


@dataclass(frozen=True)
class RoyaltyInfo:
    """A royalty owed on a sale: where it goes, the rate, and the amount."""

    address: str
    bps: int
    amount_sats: int


def calculate(
    price_sats: int, royalty_address: str | None, royalty_bps: int | None
) -> RoyaltyInfo | None:
    """Compute the royalty on a sale, or None when no royalty is configured."""
    if royalty_address is None or royalty_bps is None:
        return None
    if royalty_bps <= 0:
        return None
    return RoyaltyInfo(
        address=royalty_address,
        bps=royalty_bps,
        amount_sats=price_sats * royalty_bps // BPS_DENOMINATOR,
    )


def verify_royalty_in_psbt(psbt_hex: str, royalty: RoyaltyInfo) -> int:
    """Check the PSBT pays at least the royalty to its address.

    Returns the index of the first qualifying output; raises RoyaltyError otherwise.
    """
    try:
        raw = bytes.fromhex(psbt_hex)
    except (ValueError, TypeError) as exc:
        raise RoyaltyError(f"Failed to decode PSBT hex: {exc}") from exc
    try:
        psbt = Psbt.deserialize(raw)
    except PsbtError as exc:
        raise RoyaltyError(f"Failed to deserialize PSBT: {exc}") from exc

    try:
        royalty_script = script_pubkey_for(royalty.address)
    except AddressError as exc:
        raise RoyaltyError(f"Invalid royalty address '{royalty.address}': {exc}") from exc

    for index, txout in enumerate(psbt.unsigned_tx.outputs):
        if txout.script_pubkey == royalty_script and txout.value >= royalty.amount_sats:
            return index

    raise RoyaltyError(
        f"PSBT does not contain a royalty output of at least {royalty.amount_sats} "
        f"sats to {royalty.address}"
    )