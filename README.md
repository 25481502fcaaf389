# ordmarket

Building blocks for a trustless marketplace of Bitcoin ordinal inscriptions.

The package provides these parts:

- **Listings and purchases** built on partially signed Bitcoin transactions
  (PSBTs, BIP-174). The seller signs one input with
  `SIGHASH_SINGLE | ANYONECANPAY`. The buyer then completes the transaction
  with their own input, the inscription output and their change.
- **Mempool protection.** The inscription is first moved into a 2-of-2 P2WSH
  multisig shared by the seller and the marketplace, with keys sorted by
  BIP-67. The sale then spends from that locking transaction and carries the
  marketplace's co-signature.
- **Royalties.** A royalty is computed in basis points, and a check confirms
  that a PSBT pays it.
- **Lookups.** An async client reads the ord REST API, and a helper pages
  through a wallet's listed tokens on Magic Eden.
- **Live events.** A broadcaster fans marketplace events out to subscribers,
  and a Starlette WebSocket route forwards them to clients, which may filter
  them.

Install with the test extra to run the tests:

```
pip install -e ".[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `ordmarket.address` | `Network`, `AddressError`, `script_pubkey_for`, `encode_segwit_address`, `decode_segwit_address` (bech32/bech32m and base58check) |
| `ordmarket.tx` | `Transaction`, `TxIn`, `TxOut`, `OutPoint`, `parse_txid`, `TxError`, BIP-143 P2WSH signature hash |
| `ordmarket.keypair` | `MarketplaceKeypair`, `parse_public_key`, `KeyError_` |
| `ordmarket.psbt` | `Psbt`, `PsbtInput`, `PsbtOutput`, `SighashType`, `decode_psbt`, `encode_psbt`, `PsbtError` |
| `ordmarket.trade` | Listing, buy, locking and protected-sale PSBT construction and finalisation |
| `ordmarket.royalty` | `RoyaltyInfo`, `calculate`, `verify_royalty_in_psbt`, `RoyaltyError` |
| `ordmarket.ord` | `OrdClient`, `OrdInscription`, `InscriptionPage`, `SatInfo`, `OrdError` |
| `ordmarket.magic_eden` | `MagicEdenListing`, `fetch_listings_by_seller` |
| `ordmarket.ws` | `NewListing`, `SaleConfirmed`, `OfferReceived`, `PriceUpdate`, `WsSubscribe`, `WsBroadcaster`, `event_matches`, `handle_socket`, `router` |

Errors are raised as exceptions. `AddressError`, `TxError`, `KeyError_`,
`PsbtError` and `RoyaltyError` all derive from `ValueError`. `OrdError`
derives from `RuntimeError`. The functions in `ordmarket.trade` report bad
input as `PsbtError`.

## Listing an inscription and buying it

```python
from ordmarket.trade import (
    BuyRequest,
    ListingRequest,
    build_buy_psbt,
    build_listing_psbt,
)

listing = build_listing_psbt(
    ListingRequest(
        inscription_txid="00" * 31 + "01",
        inscription_vout=0,
        seller_address="bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4",
        price_sats=500_000,
    )
)
# listing.psbt_hex goes to the seller's wallet to be signed.

buy = build_buy_psbt(
    BuyRequest(
        seller_psbt_hex=listing.psbt_hex,  # normally the seller-signed PSBT
        buyer_address="bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq",
        buyer_utxo_txid="00" * 31 + "01",
        buyer_utxo_vout=1,
        buyer_utxo_amount_sats=1_000_000,
        fee_rate_sat_vb=10.0,
    )
)
print(buy.estimated_fee_sats)  # 1850: 185 vbytes at 10 sat/vB
```

The purchase has two inputs, the seller's and the buyer's. It has three
outputs:

1. the price, paid to the seller;
2. 546 sats that carry the inscription to the buyer;
3. the buyer's change.

The fee is estimated as `10 + 41 * inputs + 31 * outputs` vbytes times the
fee rate. After the buyer signs, `finalize_and_extract` moves each input's
partial signatures into a witness and returns the raw transaction hex, ready
to broadcast.

If the buyer's UTXO cannot cover the price, the dust and the fee,
`PsbtError` is raised with the amounts involved. Invalid txids, addresses and
PSBTs also raise `PsbtError`.

## Mempool-protected sales

1. `build_locking_psbt` builds a PSBT that moves the inscription into the
   seller/marketplace multisig. `build_multisig_redeem_script` gives the
   multisig script and `p2wsh_address` gives its address. An inscription worth
   less than `MIN_SELF_FUNDED` (343 sats) cannot pay for its own move, so a gas
   UTXO has to be supplied. When no fee rate is given, the fee is
   `DEFAULT_LOCKING_TX_FEE_SATS` (13 sats). When a rate is given, 13 sats is
   the minimum fee.
2. After the seller has signed, `finalize_locking_psbt` returns the raw locking
   transaction. Keep it, and do not broadcast it yet.
3. `build_protected_sale_psbt` builds the sale PSBT, which spends the multisig
   output of that locking transaction. The result also gives `locking_txid`.
4. `apply_marketplace_signature` adds the marketplace's `SIGHASH_ALL`
   co-signature to input 0.
5. `finalize_multisig_and_extract` assembles the P2WSH witness, with the
   signatures in BIP-67 key order. It finalises the buyer's input and returns
   the raw transaction hex.

The marketplace key can be loaded from the environment:

```python
from ordmarket.keypair import MarketplaceKeypair

keypair = MarketplaceKeypair.from_env()  # reads MARKETPLACE_SECRET_KEY (64 hex chars)
print(keypair.pubkey_hex())              # 33-byte compressed public key, hex
```

`sign_sighash` returns a low-S DER-encoded ECDSA signature.

## Royalties

```python
from ordmarket.royalty import calculate, verify_royalty_in_psbt

info = calculate(100_000, "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq", 250)
print(info.amount_sats)  # 2500

index = verify_royalty_in_psbt(buy.psbt_hex, info)  # raises RoyaltyError if unpaid
```

`calculate` returns `None` when there is no address, when there is no rate,
or when the rate is zero or negative. `verify_royalty_in_psbt` returns the
index of the first output that pays at least the royalty amount to the royalty
address.

## Reading from ord

```python
from ordmarket.ord import OrdClient


async def show(inscription_id: str) -> None:
    async with OrdClient() as client:  # base URL from ORD_URL, default http://127.0.0.1:80
        inscription = await client.get_inscription(inscription_id)
        print(inscription.number, inscription.address)
```

The client also offers these methods:

- `get_inscription_content`, which returns the raw bytes;
- `list_inscriptions(page)`;
- `get_inscriptions_by_address`, which walks every page and then fetches each
  inscription in turn;
- `get_sat_info`.

A failed request, a non-success status or an unexpected body raises
`OrdError`.

## Magic Eden listings

`fetch_listings_by_seller(client, seller_address)` takes an
`httpx.AsyncClient` and pages through the wallet's listed tokens, 100 at a
time. A non-success status ends the scan without an error. Tokens that have no
inscription id are skipped. A list price that is not an integer is read as 0.

## Live events

```python
from ordmarket.ws import NewListing, WsBroadcaster, router

broadcaster = WsBroadcaster()
routes = router(broadcaster)  # a Starlette Router serving /ws

broadcaster.send(
    NewListing(inscription_id="abc123i0", price_sats=50_000, seller="bc1qseller")
)
```

A client has five seconds after connecting to send a subscription message,
such as `{"inscription_id": "abc123i0"}`. After that it receives only the
events for that inscription. A client that sends nothing, or a message that
cannot be read as a subscription, receives every event. Events do not carry a
collection id, so a filter that sets only `collection_id` matches nothing.

Each event arrives as JSON with a `type` field: `new_listing`,
`sale_confirmed`, `offer_received` or `price_update`. `event_to_json` and
`event_from_json` convert events to and from that form.

Each subscriber holds up to 1024 pending events by default. When it falls
further behind, the oldest events are dropped.

## What the package does not do

The package keeps no storage and runs no background jobs. It does not record
listings, sales or activity. It does not talk to a Bitcoin node, so it
neither indexes new inscriptions nor watches for confirmations. Apart from
the `/ws` route, it provides no HTTP API or server. All of these are left to
the application that uses these building blocks.