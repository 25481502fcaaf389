"""Live marketplace events pushed to websocket clients."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar, Union

from starlette.routing import Router, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

DEFAULT_CAPACITY = 1024
"""Events a subscriber may fall behind by before the oldest are dropped."""

SUBSCRIBE_TIMEOUT = 5.0
"""Seconds a new client has to send its optional subscription filter."""


@dataclass(frozen=True)
class NewListing:
    TYPE: ClassVar[str] = "new_listing"

    inscription_id: str
    price_sats: int
    seller: str


@dataclass(frozen=True)
class SaleConfirmed:
    TYPE: ClassVar[str] = "sale_confirmed"

    inscription_id: str
    price_sats: int
    buyer: str
    tx_id: str


@dataclass(frozen=True)
class OfferReceived:
    TYPE: ClassVar[str] = "offer_received"

    inscription_id: str
    price_sats: int
    buyer: str


@dataclass(frozen=True)
class PriceUpdate:
    TYPE: ClassVar[str] = "price_update"

    inscription_id: str
    old_price_sats: int
    new_price_sats: int


WsEvent = Union[NewListing, SaleConfirmed, OfferReceived, PriceUpdate]

_EVENT_TYPES: dict[str, type] = {
    cls.TYPE: cls for cls in (NewListing, SaleConfirmed, OfferReceived, PriceUpdate)
}


def event_to_json(event: WsEvent) -> str:
    """Serialize an event as a JSON object tagged with its ``type``."""
    return json.dumps({"type": event.TYPE, **asdict(event)}, separators=(",", ":"))


def _load_object(text: str, what: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValueError(f"invalid {what} JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a JSON object")
    return data


def event_from_json(text: str) -> WsEvent:
    """Parse a tagged JSON event; raises ValueError when it is malformed."""
    data = _load_object(text, "event")
    tag = data.get("type")
    cls = _EVENT_TYPES.get(tag) if isinstance(tag, str) else None
    if cls is None:
        raise ValueError(f"unknown event type {tag!r}")
    values: dict[str, Any] = {}
    for spec in fields(cls):
        if spec.name not in data:
            raise ValueError(f"missing field {spec.name!r} in {tag} event")
        value = data[spec.name]
        if spec.type == "int":
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"field {spec.name!r} must be a non-negative integer")
        elif not isinstance(value, str):
            raise ValueError(f"field {spec.name!r} must be a string")
        values[spec.name] = value
    return cls(**values)


@dataclass(frozen=True)
class WsSubscribe:
    """A client's subscription filter; unset fields do not restrict anything."""

    inscription_id: str | None = None
    collection_id: str | None = None

    @classmethod
    def from_json(cls, text: str) -> "WsSubscribe":
        data = _load_object(text, "subscription")
        values: dict[str, str | None] = {}
        for spec in fields(cls):
            value = data.get(spec.name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"field {spec.name!r} must be a string or null")
            values[spec.name] = value
        return cls(**values)


def event_matches(event: WsEvent, subscription: WsSubscribe | None) -> bool:
    """Whether ``event`` should be forwarded to a client with this filter."""
    if subscription is None:
        return True
    if subscription.inscription_id is None and subscription.collection_id is None:
        return True
    if subscription.inscription_id is not None:
        return event.inscription_id == subscription.inscription_id
    # Events carry no collection id, so a collection-only filter matches nothing.
    return False


class Subscription:
    """One receiver of broadcast events; drops the oldest when it falls behind."""

    def __init__(self, broadcaster: "WsBroadcaster", capacity: int) -> None:
        self._broadcaster = broadcaster
        self._pending: deque[WsEvent] = deque(maxlen=capacity)
        self._ready = asyncio.Event()

    def _push(self, event: WsEvent) -> None:
        self._pending.append(event)
        self._ready.set()

    def _close(self) -> None:
        self._broadcaster._subscribers.discard(self)

    async def recv(self) -> WsEvent:
        """Wait for and return the next event still held for this receiver."""
        while not self._pending:
            self._ready.clear()
            await self._ready.wait()
        return self._pending.popleft()


class WsBroadcaster:
    """Fans events out to every current subscriber."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._subscribers: set[Subscription] = set()

    def send(self, event: WsEvent) -> None:
        """Deliver ``event`` to all subscribers; with none, it is dropped."""
        for subscription in list(self._subscribers):
            subscription._push(event)

    def subscribe(self) -> Subscription:
        """Register a receiver for events sent from now on."""
        subscription = Subscription(self, self._capacity)
        self._subscribers.add(subscription)
        return subscription


async def _read_filter(websocket: WebSocket) -> tuple[WsSubscribe | None, bool]:
    """Return (filter, still connected) after the optional first message."""
    try:
        message = await asyncio.wait_for(websocket.receive(), SUBSCRIBE_TIMEOUT)
    except asyncio.TimeoutError:
        return None, True
    if message.get("type") == "websocket.disconnect":
        return None, False
    text = message.get("text")
    if text is None:
        return None, True
    try:
        return WsSubscribe.from_json(text), True
    except ValueError:
        return None, True


async def handle_socket(websocket: WebSocket, broadcaster: WsBroadcaster) -> None:
    """Forward matching broadcast events to an accepted websocket until it goes away."""
    subscription_filter, connected = await _read_filter(websocket)
    if not connected:
        return
    subscription = broadcaster.subscribe()
    try:
        while True:
            event = await subscription.recv()
            if not event_matches(event, subscription_filter):
                continue
            try:
                await websocket.send_text(event_to_json(event))
            except (WebSocketDisconnect, RuntimeError, OSError):
                break
    finally:
        subscription._close()


def router(broadcaster: WsBroadcaster) -> Router:
    """A router serving the event stream at /ws."""

    async def endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        await handle_socket(websocket, broadcaster)

    return Router(routes=[WebSocketRoute("/ws", endpoint)])