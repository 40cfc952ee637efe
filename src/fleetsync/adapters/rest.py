"""REST record store speaking PostgREST conventions."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, cast

import httpx

from fleetsync.adapters.base import Filters, Order, Record
from fleetsync.exceptions import NetworkError, ValidationError, error_for_status


def _format_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"is.{str(value).lower()}"
    return f"eq.{value}"


def _format_order(order: Order) -> str:
    if isinstance(order, tuple) and len(order) == 2 and isinstance(order[1], bool):
        order = [order]  # type: ignore[list-item]
    return ",".join(
        f"{column}.{'asc' if ascending else 'desc'}"
        for column, ascending in cast(Sequence[tuple[str, bool]], order)
    )


class RestRecordStore:
    """Async record store backed by a PostgREST endpoint.

    Usage:
        store = RestRecordStore("https://project.example.co", api_key="...")
        rows = await store.select("maintenance", order=("date", False))
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str,
        access_token: str | None = None,
        schema_path: str = "/rest/v1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._schema_path = schema_path.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def set_access_token(self, access_token: str) -> None:
        """Use a user's access token for subsequent requests."""
        self._client.headers["Authorization"] = f"Bearer {access_token}"

    async def _request(
        self,
        method: str,
        resource: str,
        *,
        params: dict[str, str] | None = None,
        body: Any = None,
        prefer: str | None = None,
    ) -> list[Record]:
        """Make a request and map failures into the error taxonomy."""
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method,
                f"{self._schema_path}/{resource}",
                params=params,
                json=body,
                headers=headers,
            )
        except httpx.TransportError as exc:
            raise NetworkError(str(exc) or type(exc).__name__, resource=resource) from exc

        if not response.is_success:
            try:
                error = response.json().get("message", "Request failed")
            except Exception:
                error = f"HTTP {response.status_code}"
            raise error_for_status(response.status_code, error, resource=resource)
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, dict):
            return [data]
        return cast(list[Record], data)

    async def select(
        self,
        resource: str,
        *,
        columns: str = "*",
        filters: Filters | None = None,
        order: Order | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Record]:
        """Read rows of a resource."""
        params: dict[str, str] = {"select": columns}
        for column, value in (filters or {}).items():
            params[column] = _format_value(value)
        if order:
            params["order"] = _format_order(order)
        if limit is not None:
            params["limit"] = str(limit)
        if offset is not None:
            params["offset"] = str(offset)
        return await self._request("GET", resource, params=params)

    async def insert(self, resource: str, values: Record | Sequence[Record]) -> list[Record]:
        """Insert rows and return the stored representation."""
        body = values if isinstance(values, dict) else list(values)
        return await self._request(
            "POST", resource, body=body, prefer="return=representation"
        )

    async def update(self, resource: str, values: Record, *, filters: Filters) -> list[Record]:
        """Update matching rows and return them."""
        if not filters:
            raise ValidationError("update requires filters", resource=resource)
        return await self._request(
            "PATCH",
            resource,
            params={column: _format_value(v) for column, v in filters.items()},
            body=values,
            prefer="return=representation",
        )

    async def delete(self, resource: str, *, filters: Filters) -> list[Record]:
        """Delete matching rows and return them."""
        if not filters:
            raise ValidationError("delete requires filters", resource=resource)
        return await self._request(
            "DELETE",
            resource,
            params={column: _format_value(v) for column, v in filters.items()},
            prefer="return=representation",
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
