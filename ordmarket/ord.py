"""Async client for the ord server's JSON API."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import httpx

_ENV_VAR = "ORD_URL"
_DEFAULT_URL = "http://127.0.0.1:80"


class OrdError(RuntimeError):
    """Raised when an ord request fails or returns an unexpected response."""


def _field(
    data: dict[str, Any], key: str, kind: type, *, required: bool = False, unsigned: bool = False
) -> Any:
    value = data.get(key)
    if value is None:
        if required:
            raise OrdError(f"missing field {key!r}")
        return None
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise OrdError(f"field {key!r} must be an integer, got {value!r}")
        if unsigned and value < 0:
            raise OrdError(f"field {key!r} must not be negative, got {value}")
    elif not isinstance(value, kind):
        raise OrdError(f"field {key!r} has wrong type: {value!r}")
    return value


def _require_mapping(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise OrdError(f"{what} must be a JSON object")
    return data


@dataclass(frozen=True)
class OrdInscription:
    """A single inscription as returned by GET /inscription/{id}."""

    id: str
    number: int
    address: str | None = None
    content_type: str | None = None
    content_length: int | None = None
    sat: int | None = None
    genesis_height: int | None = None
    genesis_timestamp: int | None = None
    value: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrdInscription":
        data = _require_mapping(data, "inscription")
        return cls(
            id=_field(data, "id", str, required=True),
            number=_field(data, "number", int, required=True),
            address=_field(data, "address", str),
            content_type=_field(data, "content_type", str),
            content_length=_field(data, "content_length", int, unsigned=True),
            sat=_field(data, "sat", int, unsigned=True),
            genesis_height=_field(data, "genesis_height", int, unsigned=True),
            genesis_timestamp=_field(data, "genesis_timestamp", int),
            value=_field(data, "value", int, unsigned=True),
        )


@dataclass(frozen=True)
class InscriptionPage:
    """A page of inscription ids as returned by GET /inscriptions?page={n}."""

    inscriptions: list[str]
    page_index: int
    more: bool
    page_size: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InscriptionPage":
        data = _require_mapping(data, "inscription page")
        inscriptions = _field(data, "inscriptions", list, required=True)
        if not all(isinstance(item, str) for item in inscriptions):
            raise OrdError("field 'inscriptions' must hold only strings")
        return cls(
            inscriptions=list(inscriptions),
            page_index=_field(data, "page_index", int, required=True, unsigned=True),
            more=_field(data, "more", bool, required=True),
            page_size=_field(data, "page_size", int, required=True, unsigned=True),
        )


@dataclass(frozen=True)
class SatInfo:
    """Sat metadata as returned by GET /sat/{n}."""

    number: int
    decimal: str | None = None
    degree: str | None = None
    percentile: str | None = None
    name: str | None = None
    height: int | None = None
    cycle: int | None = None
    epoch: int | None = None
    period: int | None = None
    offset: int | None = None
    rarity: str | None = None
    timestamp: int | None = None
    inscription: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SatInfo":
        data = _require_mapping(data, "sat info")
        return cls(
            number=_field(data, "number", int, required=True, unsigned=True),
            decimal=_field(data, "decimal", str),
            degree=_field(data, "degree", str),
            percentile=_field(data, "percentile", str),
            name=_field(data, "name", str),
            height=_field(data, "height", int, unsigned=True),
            cycle=_field(data, "cycle", int, unsigned=True),
            epoch=_field(data, "epoch", int, unsigned=True),
            period=_field(data, "period", int, unsigned=True),
            offset=_field(data, "offset", int, unsigned=True),
            rarity=_field(data, "rarity", str),
            timestamp=_field(data, "timestamp", int),
            inscription=_field(data, "inscription", str),
        )


class OrdClient:
    """HTTP client for the ord REST API.

    The base URL defaults to the ORD_URL environment variable, then to
    http://127.0.0.1:80.
    """

    def __init__(self, base_url: str | None = None, http: httpx.AsyncClient | None = None):
        self.base_url = base_url if base_url is not None else os.environ.get(_ENV_VAR, _DEFAULT_URL)
        self._owns_http = http is None
        self._http = http if http is not None else httpx.AsyncClient()

    async def __aenter__(self) -> "OrdClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this client created it."""
        if self._owns_http:
            await self._http.aclose()

    async def _get(self, path: str, headers: dict[str, str] | None = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise OrdError(f"GET {url}: request failed: {exc}") from exc
        if not response.is_success:
            try:
                body = response.text
            except (httpx.HTTPError, UnicodeDecodeError):
                body = "<unreadable body>"
            raise OrdError(
                f"GET {url}: HTTP {response.status_code} {response.reason_phrase}: {body}"
            )
        return response

    async def _get_json(self, path: str) -> Any:
        response = await self._get(path, headers={"Accept": "application/json"})
        try:
            return response.json()
        except ValueError as exc:
            raise OrdError(
                f"GET {response.request.url}: failed to deserialize JSON response: {exc}"
            ) from exc

    async def get_inscription(self, inscription_id: str) -> OrdInscription:
        """Fetch one inscription: GET /inscription/{id}."""
        return OrdInscription.from_dict(await self._get_json(f"/inscription/{inscription_id}"))

    async def get_inscription_content(self, inscription_id: str) -> bytes:
        """Fetch an inscription's raw content bytes: GET /content/{id}."""
        response = await self._get(f"/content/{inscription_id}")
        return response.content

    async def list_inscriptions(self, page: int) -> InscriptionPage:
        """Fetch a page of inscription ids: GET /inscriptions?page={page}."""
        return InscriptionPage.from_dict(await self._get_json(f"/inscriptions?page={page}"))

    async def get_inscriptions_by_address(self, address: str) -> list[OrdInscription]:
        """Fetch every inscription owned by ``address``, page by page, then one by one."""
        all_ids: list[str] = []
        page = 0
        while True:
            page_data = InscriptionPage.from_dict(
                await self._get_json(f"/inscriptions/address/{address}?page={page}")
            )
            all_ids.extend(page_data.inscriptions)
            if not page_data.more:
                break
            page += 1
        # Sequential on purpose, so the ord node is not flooded.
        return [await self.get_inscription(inscription_id) for inscription_id in all_ids]

    async def get_sat_info(self, sat: int) -> SatInfo:
        """Fetch sat metadata: GET /sat/{sat}."""
        return SatInfo.from_dict(await self._get_json(f"/sat/{sat}"))