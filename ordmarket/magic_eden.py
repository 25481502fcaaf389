"""Reading a seller's active listings from the Magic Eden ordinals API."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import httpx

NAME = "magic_eden"
API_BASE = "https://api-mainnet.magiceden.dev"
PAGE_LIMIT = 100
USER_AGENT = "ordmarket/1.0"

_INT_RE = re.compile(r"[+-]?[0-9]+")
_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1


@dataclass(frozen=True)
class MagicEdenListing:
    inscription_id: str
    price_sats: int
    signed_psbt: str | None
    seller_address: str


def _optional_str(token: dict[str, Any], key: str) -> str | None:
    value = token.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"token field {key!r} must be a string, got {value!r}")
    return value


def _price_sats(value: Any) -> int:
    """Interpret a list price given as a JSON integer or a decimal string; else 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and _INT_RE.fullmatch(value):
        number = int(value)
    else:
        return 0
    return number if _I64_MIN <= number <= _I64_MAX else 0


def _listing_from_token(token: Any, seller_address: str) -> MagicEdenListing | None:
    if not isinstance(token, dict):
        raise ValueError(f"token must be a JSON object, got {token!r}")
    inscription_id = _optional_str(token, "inscriptionId")
    if inscription_id is None:
        inscription_id = _optional_str(token, "id")
    if not inscription_id:
        return None
    owner = _optional_str(token, "owner")
    return MagicEdenListing(
        inscription_id=inscription_id,
        price_sats=_price_sats(token.get("listPrice")),
        signed_psbt=_optional_str(token, "signedPsbt"),
        seller_address=owner if owner is not None else seller_address,
    )


async def fetch_listings_by_seller(
    client: httpx.AsyncClient, seller_address: str
) -> list[MagicEdenListing]:
    """Fetch every listed token of ``seller_address``, page by page.

    A non-success status ends the scan quietly; transport errors propagate and a
    malformed body raises ValueError.
    """
    listings: list[MagicEdenListing] = []
    offset = 0
    while True:
        url = (
            f"{API_BASE}/v2/ord/btc/wallets/{seller_address}/tokens"
            f"?listed=true&limit={PAGE_LIMIT}&offset={offset}"
        )
        response = await client.get(url, headers={"User-Agent": USER_AGENT})
        if not response.is_success:
            break

        try:
            body = response.json()
        except ValueError as exc:
            raise ValueError(f"GET {url}: failed to deserialize JSON response: {exc}") from exc
        if not isinstance(body, dict):
            raise ValueError(f"GET {url}: response is not a JSON object")

        tokens = body.get("tokens")
        if tokens is None:
            break
        if not isinstance(tokens, list):
            raise ValueError(f"GET {url}: 'tokens' is not a list")

        for token in tokens:
            listing = _listing_from_token(token, seller_address)
            if listing is not None:
                listings.append(listing)

        if len(tokens) < PAGE_LIMIT:
            break
        offset += PAGE_LIMIT

    return listings