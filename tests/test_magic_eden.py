import httpx
import pytest
import respx

from ordmarket.magic_eden import (
    API_BASE,
    PAGE_LIMIT,
    USER_AGENT,
    MagicEdenListing,
    fetch_listings_by_seller,
)

SELLER = "bc1qseller"
HOST = httpx.URL(API_BASE).host
PATH = f"/v2/ord/btc/wallets/{SELLER}/tokens"


def _route(mock):
    return mock.route(method="GET", host=HOST, path=PATH)


@pytest.mark.asyncio
async def test_single_page_parses_tokens():
    tokens = [
        {"inscriptionId": "aaai0", "listPrice": 5000, "signedPsbt": "70736274ff", "owner": "bc1qowner"},
        {"id": "bbbi0", "listPrice": "7000"},
        {"inscriptionId": "", "listPrice": 1},
        {"listPrice": 1},
        {"inscriptionId": "ccci0"},
    ]
    with respx.mock() as mock:
        route = _route(mock).mock(return_value=httpx.Response(200, json={"tokens": tokens}))
        async with httpx.AsyncClient() as client:
            listings = await fetch_listings_by_seller(client, SELLER)

    assert listings == [
        MagicEdenListing("aaai0", 5000, "70736274ff", "bc1qowner"),
        MagicEdenListing("bbbi0", 7000, None, SELLER),
        MagicEdenListing("ccci0", 0, None, SELLER),
    ]
    request = route.calls.last.request
    assert request.headers["User-Agent"] == USER_AGENT
    assert request.url.params["listed"] == "true"
    assert request.url.params["offset"] == "0"


@pytest.mark.asyncio
async def test_unparseable_prices_become_zero():
    tokens = [
        {"inscriptionId": "x1", "listPrice": "abc"},
        {"inscriptionId": "x2", "listPrice": 1.5},
        {"inscriptionId": "x3", "listPrice": True},
    ]
    with respx.mock() as mock:
        _route(mock).mock(return_value=httpx.Response(200, json={"tokens": tokens}))
        async with httpx.AsyncClient() as client:
            listings = await fetch_listings_by_seller(client, SELLER)
    assert [listing.inscription_id for listing in listings] == ["x1", "x2", "x3"]
    assert all(listing.price_sats == 0 for listing in listings)


@pytest.mark.asyncio
async def test_paginates_until_short_page():
    first = [{"inscriptionId": f"p{n}", "listPrice": n} for n in range(PAGE_LIMIT)]
    second = [{"inscriptionId": "last", "listPrice": 9}]
    pages = {"0": first, str(PAGE_LIMIT): second}

    def handler(request):
        return httpx.Response(200, json={"tokens": pages[request.url.params["offset"]]})

    with respx.mock() as mock:
        route = _route(mock).mock(side_effect=handler)
        async with httpx.AsyncClient() as client:
            listings = await fetch_listings_by_seller(client, SELLER)

    assert len(listings) == len(first) + len(second)
    assert listings[-1].inscription_id == "last"
    assert [call.request.url.params["offset"] for call in route.calls] == ["0", str(PAGE_LIMIT)]
    assert {call.request.url.params["limit"] for call in route.calls} == {str(PAGE_LIMIT)}


@pytest.mark.asyncio
async def test_non_success_status_yields_empty():
    with respx.mock() as mock:
        _route(mock).mock(return_value=httpx.Response(404, text="unknown address"))
        async with httpx.AsyncClient() as client:
            listings = await fetch_listings_by_seller(client, SELLER)
    assert listings == []


@pytest.mark.asyncio
async def test_missing_tokens_yields_empty():
    with respx.mock() as mock:
        route = _route(mock).mock(return_value=httpx.Response(200, json={"tokens": None}))
        async with httpx.AsyncClient() as client:
            listings = await fetch_listings_by_seller(client, SELLER)
    assert listings == []
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_invalid_json_raises():
    with respx.mock() as mock:
        _route(mock).mock(return_value=httpx.Response(200, text="not json"))
        async with httpx.AsyncClient() as client:
            with pytest.raises(ValueError, match="deserialize"):
                await fetch_listings_by_seller(client, SELLER)


@pytest.mark.asyncio
async def test_transport_error_propagates():
    with respx.mock() as mock:
        _route(mock).mock(side_effect=httpx.ConnectError("refused"))
        async with httpx.AsyncClient() as client:
            with pytest.raises(httpx.ConnectError):
                await fetch_listings_by_seller(client, SELLER)