# clinic_booking/services/remote_store.py
"""
Remote store interface and its HTTP client.

The store owns appointments and scheduling settings. It is reached through
a PostgREST-style API:

    GET    /{table}?clinic_id=eq.{id}&date=eq.{date}   list
    POST   /{table}                                     create
    PATCH  /{table}?id=eq.{id}                          update
    DELETE /{table}?id=eq.{id}                          delete
    GET    /realtime/{table}                            NDJSON change stream

Writes are not idempotent on the store side and are never retried here.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import httpx

from ..exceptions import RemoteStoreError, SlotConflictError, TransientStoreError
from ..schemas.events import ChangeEvent

logger = logging.getLogger(__name__)

APPOINTMENTS_TABLE = "appointments"
SETTINGS_TABLE = "scheduling_settings"


class RemoteStore(ABC):
    """Opaque remote store. All calls may raise TransientStoreError."""

    @abstractmethod
    async def list(self, table: str, **filters: Any) -> list[dict]:
        ...

    async def get(self, table: str, entity_id: str) -> Optional[dict]:
        rows = await self.list(table, id=entity_id)
        return rows[0] if rows else None

    @abstractmethod
    async def create(self, table: str, record: dict) -> dict:
        ...

    @abstractmethod
    async def update(self, table: str, entity_id: str, patch: dict) -> dict:
        ...

    @abstractmethod
    async def delete(self, table: str, entity_id: str) -> None:
        ...

    @abstractmethod
    async def subscribe(self, table: str) -> AsyncIterator[ChangeEvent]:
        """Open the change feed of `table`. Returns once the feed is established."""


class HttpRemoteStore(RemoteStore):
    """Async httpx client for the store's REST + stream API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs,
    ) -> Optional[Any]:
        """Base HTTP request; maps transport errors and error statuses."""
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Store request failed: {method} {path} -> {e}")
            raise TransientStoreError(f"{method} {path}: {e}") from e

        if resp.status_code == 204:
            return None

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            logger.error(f"Store error: {method} {path} -> {resp.status_code} {detail}")
            if resp.status_code == 409:
                raise SlotConflictError(detail, status_code=409)
            if resp.status_code in (408, 429) or resp.status_code >= 500:
                raise TransientStoreError(detail, status_code=resp.status_code)
            raise RemoteStoreError(detail, status_code=resp.status_code)

        if not resp.content:
            return None
        return resp.json()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def list(self, table: str, **filters: Any) -> list[dict]:
        params = {k: f"eq.{_filter_value(v)}" for k, v in filters.items()}
        result = await self._request("GET", f"/{table}", params=params)
        return result or []

    async def create(self, table: str, record: dict) -> dict:
        result = await self._request(
            "POST",
            f"/{table}",
            json=record,
            headers={"Prefer": "return=representation"},
        )
        return _single(result, table)

    async def update(self, table: str, entity_id: str, patch: dict) -> dict:
        result = await self._request(
            "PATCH",
            f"/{table}",
            params={"id": f"eq.{entity_id}"},
            json=patch,
            headers={"Prefer": "return=representation"},
        )
        return _single(result, table)

    async def delete(self, table: str, entity_id: str) -> None:
        await self._request("DELETE", f"/{table}", params={"id": f"eq.{entity_id}"})

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    async def subscribe(self, table: str) -> AsyncIterator[ChangeEvent]:
        request = self._client.build_request("GET", f"/realtime/{table}")
        try:
            resp = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransientStoreError(f"subscribe {table}: {e}") from e

        if resp.status_code >= 400:
            await resp.aclose()
            raise TransientStoreError(
                f"subscribe {table}: HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        logger.info(f"Change feed opened: {table}")
        return _iter_events(resp, table)


async def _iter_events(resp: httpx.Response, table: str) -> AsyncIterator[ChangeEvent]:
    try:
        async for line in resp.aiter_lines():
            if not line.strip():
                continue  # keep-alive
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.error(f"Invalid JSON in change feed {table}: {line[:200]}")
                continue
            payload.setdefault("table", table)
            yield ChangeEvent.model_validate(payload)
    except httpx.HTTPError as e:
        raise TransientStoreError(f"change feed {table} dropped: {e}") from e
    finally:
        await resp.aclose()


def _filter_value(value: Any) -> str:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _single(result: Any, table: str) -> dict:
    if isinstance(result, list):
        if not result:
            raise RemoteStoreError(f"Store returned no row for {table}")
        return result[0]
    if not isinstance(result, dict):
        raise RemoteStoreError(f"Unexpected store response for {table}")
    return result


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except Exception:
        return resp.text[:200] if resp.text else "No response"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)
