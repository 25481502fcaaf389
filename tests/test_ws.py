import asyncio
import json
from unittest.mock import patch

import pytest
from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocketDisconnect

from ordmarket.ws import (
    NewListing,
    OfferReceived,
    PriceUpdate,
    SaleConfirmed,
    WsBroadcaster,
    WsSubscribe,
    event_from_json,
    event_matches,
    event_to_json,
    handle_socket,
    router,
)


class FakeSocket:
    def __init__(self, incoming, limit=1):
        self._incoming = list(incoming)
        self.sent = []
        self._limit = limit

    async def receive(self):
        if self._incoming:
            return self._incoming.pop(0)
        await asyncio.Event().wait()

    async def send_text(self, text):
        self.sent.append(text)
        if len(self.sent) >= self._limit:
            raise WebSocketDisconnect(1000)


def text_message(text):
    return {"type": "websocket.receive", "text": text}


async def settle():
    for _ in range(20):
        await asyncio.sleep(0)


def test_new_listing_serializes():
    json_text = event_to_json(NewListing("abc123i0", 50_000, "bc1qseller"))
    assert '"type":"new_listing"' in json_text
    assert '"inscription_id":"abc123i0"' in json_text
    assert '"price_sats":50000' in json_text
    assert '"seller":"bc1qseller"' in json_text


def test_sale_confirmed_serializes():
    json_text = event_to_json(SaleConfirmed("def456i0", 100_000, "bc1qbuyer", "deadbeeftx"))
    assert '"type":"sale_confirmed"' in json_text
    assert '"inscription_id":"def456i0"' in json_text
    assert '"price_sats":100000' in json_text
    assert '"buyer":"bc1qbuyer"' in json_text
    assert '"tx_id":"deadbeeftx"' in json_text


def test_offer_received_serializes():
    json_text = event_to_json(OfferReceived("ghi789i0", 75_000, "bc1qofferer"))
    assert '"type":"offer_received"' in json_text
    assert '"inscription_id":"ghi789i0"' in json_text
    assert '"price_sats":75000' in json_text
    assert '"buyer":"bc1qofferer"' in json_text


@pytest.mark.parametrize(
    "event",
    [
        NewListing("a", 1, "s"),
        SaleConfirmed("b", 2, "u", "t"),
        OfferReceived("c", 3, "u"),
        PriceUpdate("d", 4, 5),
    ],
)
def test_event_json_round_trip(event):
    assert event_from_json(event_to_json(event)) == event


def test_price_update_tag():
    data = json.loads(event_to_json(PriceUpdate("x", 1, 2)))
    assert data == {
        "type": "price_update",
        "inscription_id": "x",
        "old_price_sats": 1,
        "new_price_sats": 2,
    }


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        "[]",
        '{"type":"unknown","inscription_id":"a"}',
        '{"type":"new_listing","inscription_id":"a","seller":"s"}',
        '{"type":"new_listing","inscription_id":"a","price_sats":-1,"seller":"s"}',
        '{"type":"new_listing","inscription_id":1,"price_sats":1,"seller":"s"}',
    ],
)
def test_event_from_json_rejects_bad_input(text):
    with pytest.raises(ValueError):
        event_from_json(text)


def test_subscribe_from_json():
    sub = WsSubscribe.from_json('{"inscription_id":"abc","extra":1}')
    assert sub == WsSubscribe(inscription_id="abc", collection_id=None)


def test_subscribe_from_json_rejects_wrong_type():
    with pytest.raises(ValueError):
        WsSubscribe.from_json('{"inscription_id":5}')


def test_event_matches_by_inscription_id():
    event = NewListing("match_me_i0", 1_000, "bc1qseller")
    assert event_matches(event, WsSubscribe(inscription_id="match_me_i0")) is True
    assert event_matches(event, WsSubscribe(inscription_id="other_id_i0")) is False


def test_event_matches_no_filter():
    event = SaleConfirmed("any_id_i0", 5_000, "bc1qbuyer", "tx123")
    assert event_matches(event, None) is True


def test_event_matches_empty_filter():
    assert event_matches(OfferReceived("x", 1, "b"), WsSubscribe()) is True


def test_event_matches_collection_only_filter():
    assert event_matches(OfferReceived("x", 1, "b"), WsSubscribe(collection_id="c")) is False


@pytest.mark.asyncio
async def test_broadcaster_send_receive():
    broadcaster = WsBroadcaster()
    rx = broadcaster.subscribe()
    event = OfferReceived("bcast_test_i0", 42_000, "bc1qbcastbuyer")
    broadcaster.send(event)
    received = await rx.recv()
    assert event_to_json(received) == event_to_json(event)


@pytest.mark.asyncio
async def test_subscriber_only_sees_later_events():
    broadcaster = WsBroadcaster()
    broadcaster.send(NewListing("early", 1, "s"))
    rx = broadcaster.subscribe()
    broadcaster.send(NewListing("late", 2, "s"))
    received = await asyncio.wait_for(rx.recv(), 1)
    assert received.inscription_id == "late"


@pytest.mark.asyncio
async def test_lagged_subscriber_skips_oldest():
    broadcaster = WsBroadcaster(capacity=2)
    rx = broadcaster.subscribe()
    for number in range(3):
        broadcaster.send(NewListing(f"i{number}", number, "s"))
    first = await rx.recv()
    second = await rx.recv()
    assert [first.inscription_id, second.inscription_id] == ["i1", "i2"]


def test_broadcaster_rejects_zero_capacity():
    with pytest.raises(ValueError):
        WsBroadcaster(capacity=0)


@pytest.mark.asyncio
async def test_handle_socket_applies_filter():
    broadcaster = WsBroadcaster()
    socket = FakeSocket([text_message('{"inscription_id":"a"}')], limit=1)
    task = asyncio.create_task(handle_socket(socket, broadcaster))
    await settle()
    broadcaster.send(NewListing("b", 1, "s"))
    broadcaster.send(NewListing("a", 2, "s"))
    await asyncio.wait_for(task, 1)
    assert socket.sent == [event_to_json(NewListing("a", 2, "s"))]


@pytest.mark.asyncio
async def test_handle_socket_invalid_filter_forwards_everything():
    broadcaster = WsBroadcaster()
    socket = FakeSocket([text_message("garbage")], limit=2)
    task = asyncio.create_task(handle_socket(socket, broadcaster))
    await settle()
    broadcaster.send(NewListing("b", 1, "s"))
    broadcaster.send(PriceUpdate("c", 1, 2))
    await asyncio.wait_for(task, 1)
    assert [json.loads(text)["inscription_id"] for text in socket.sent] == ["b", "c"]


@pytest.mark.asyncio
async def test_handle_socket_without_subscribe_message_times_out():
    broadcaster = WsBroadcaster()
    socket = FakeSocket([], limit=1)
    with patch("ordmarket.ws.SUBSCRIBE_TIMEOUT", 0.01):
        task = asyncio.create_task(handle_socket(socket, broadcaster))
        await asyncio.sleep(0.05)
        broadcaster.send(OfferReceived("z", 9, "b"))
        await asyncio.wait_for(task, 1)
    assert socket.sent == [event_to_json(OfferReceived("z", 9, "b"))]


@pytest.mark.asyncio
async def test_handle_socket_returns_on_disconnect():
    broadcaster = WsBroadcaster()
    socket = FakeSocket([{"type": "websocket.disconnect", "code": 1000}])
    await asyncio.wait_for(handle_socket(socket, broadcaster), 1)
    broadcaster.send(NewListing("a", 1, "s"))
    assert socket.sent == []


def test_router_serves_ws_path():
    app_router = router(WsBroadcaster())
    paths = [route.path for route in app_router.routes if isinstance(route, WebSocketRoute)]
    assert paths == ["/ws"]