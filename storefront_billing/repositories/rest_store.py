"""PostgREST-style data store over HTTP (httpx).

Tables live under ``{base_url}/rest/v1/{table}``; equality predicates are sent
as ``column=eq.value`` query parameters and every mutation asks for
``return=representation`` so affected rows come back in the response.
"""

from typing import Any, Optional

import httpx

from storefront_billing.errors import normalize_error
from storefront_billing.logging_config import get_logger
from storefront_billing.repositories.data_store import DataStore, DataStoreError, Match, Row

logger = get_logger(__name__)


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def _filters(match: Optional[Match]) -> dict[str, str]:
    return {column: _filter_value(value) for column, value in (match or {}).items()}


class RestDataStore(DataStore):
    """Data store client for a hosted REST database.

    Args:
        base_url: Service URL (``/rest/v1`` is appended)
        api_key: Service key sent as ``apikey`` and bearer token
        timeout: Per-request timeout in seconds
        client: Pre-built ``httpx.AsyncClient`` (tests inject a MockTransport client)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers=headers,
            timeout=timeout,
        )

    async def _request(
        self,
        method: str,
        table: str,
        operation: str,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> list[Row]:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method, f"/{table}", params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            body = e.response.text
            logger.error(
                "data_store_request_failed",
                table=table,
                operation=operation,
                status_code=e.response.status_code,
                body=body[:500],
            )
            raise DataStoreError(
                table, operation, body or str(e), original_error=e, status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "data_store_unreachable",
                table=table,
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise normalize_error(e) from e

        if not response.content:
            return []
        payload = response.json()
        return payload if isinstance(payload, list) else [payload]

    async def select(
        self,
        table: str,
        match: Optional[Match] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        params = {"select": "*", **_filters(match)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        return await self._request("GET", table, "select", params=params)

    async def insert(self, table: str, rows: list[Row]) -> list[Row]:
        return await self._request(
            "POST", table, "insert", json=rows, prefer="return=representation"
        )

    async def update(self, table: str, values: Row, match: Match) -> list[Row]:
        return await self._request(
            "PATCH",
            table,
            "update",
            params=_filters(match),
            json=values,
            prefer="return=representation",
        )

    async def delete(self, table: str, match: Match) -> list[Row]:
        return await self._request(
            "DELETE", table, "delete", params=_filters(match), prefer="return=representation"
        )

    async def upsert(self, table: str, rows: list[Row], on_conflict: str = "id") -> list[Row]:
        return await self._request(
            "POST",
            table,
            "upsert",
            params={"on_conflict": on_conflict},
            json=rows,
            prefer="return=representation,resolution=merge-duplicates",
        )

    async def close(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        return f"RestDataStore(base_url={self._client.base_url})"
