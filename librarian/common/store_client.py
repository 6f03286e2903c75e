"""
Store Client

Async REST client for the configuration, corpus and conversation store.
The store exposes PostgREST (tables and stored procedures, one schema per
area: config, sources, rag) and an object storage API for raw files.

Uses httpx.AsyncClient with a persistent connection pool.
The client is created lazily on first use.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import StoreError

logger = logging.getLogger("librarian.common.store_client")


class StoreClient:
    """
    Thin async wrapper over the store's REST API.

    Every method either returns decoded JSON or raises StoreError.
    Timeouts are enforced per call and surface as StoreError as well.

    Usage:
        store = StoreClient(url="https://xyz.supabase.co", service_key="...")
        rows = await store.select("files", schema="sources", filters={"id": "eq.abc"})
        await store.close()
    """

    def __init__(
        self,
        url: str,
        service_key: str,
        timeout: float = 15.0,
        upload_timeout: float = 120.0,
    ):
        """
        Initialize store client.

        Args:
            url: Store base URL (without /rest/v1)
            service_key: Service role key, sent as apikey and bearer token
            timeout: Timeout for table and procedure calls, in seconds
            upload_timeout: Timeout for raw file downloads, in seconds
        """
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self._client: Optional[httpx.AsyncClient] = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Create the HTTP client if not yet created."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.url,
                timeout=httpx.Timeout(self.timeout),
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        what: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        try:
            response = await client.request(
                method,
                path,
                params=params,
                json=json_body,
                headers=headers,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            raise StoreError(f"{what} timed out") from e
        except httpx.HTTPError as e:
            raise StoreError(f"{what} failed: {e}") from e

        if response.status_code >= 400:
            detail = response.text[:300]
            logger.warning("%s returned %s: %s", what, response.status_code, detail)
            raise StoreError(f"{what} failed with status {response.status_code}")
        return response

    @staticmethod
    def _decode(response: httpx.Response, what: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"{what} returned malformed JSON") from e

    async def rpc(self, name: str, params: Dict[str, Any], schema: str = "rag") -> Any:
        """
        Call a stored procedure.

        Args:
            name: Procedure name
            params: Named arguments
            schema: Schema holding the procedure

        Returns:
            Decoded JSON result (list of rows for set-returning procedures)
        """
        what = f"Procedure {schema}.{name}"
        response = await self._request(
            "POST",
            f"/rest/v1/rpc/{name}",
            what=what,
            json_body=params,
            headers={"Content-Profile": schema},
        )
        return self._decode(response, what)

    async def select(
        self,
        table: str,
        schema: str,
        columns: str = "*",
        filters: Optional[Dict[str, str]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Select rows from a table.

        Args:
            table: Table name
            schema: Schema name
            columns: PostgREST select expression
            filters: Column filters in PostgREST syntax, e.g. {"id": "eq.42"}
                or {"or": "(org_id.eq.x,org_id.is.null)"}
            order: PostgREST order expression, e.g. "expires_at.desc"
            limit: Maximum row count

        Returns:
            List of row dicts (possibly empty)
        """
        params: Dict[str, str] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)

        what = f"Select {schema}.{table}"
        response = await self._request(
            "GET",
            f"/rest/v1/{table}",
            what=what,
            params=params,
            headers={"Accept-Profile": schema},
        )
        rows = self._decode(response, what)
        return rows if isinstance(rows, list) else []

    async def insert(self, table: str, schema: str, row: Dict[str, Any]) -> None:
        """Insert one row."""
        await self._request(
            "POST",
            f"/rest/v1/{table}",
            what=f"Insert {schema}.{table}",
            json_body=row,
            headers={"Content-Profile": schema, "Prefer": "return=minimal"},
        )

    async def update(
        self,
        table: str,
        schema: str,
        values: Dict[str, Any],
        filters: Dict[str, str],
    ) -> None:
        """Update rows matching filters."""
        await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            what=f"Update {schema}.{table}",
            params=filters,
            json_body=values,
            headers={"Content-Profile": schema, "Prefer": "return=minimal"},
        )

    async def download(self, bucket: str, path: str) -> bytes:
        """
        Download a raw object from storage.

        Args:
            bucket: Storage bucket
            path: Object path inside the bucket

        Returns:
            Object bytes
        """
        response = await self._request(
            "GET",
            f"/storage/v1/object/{bucket}/{path.lstrip('/')}",
            what=f"Download {bucket}/{path}",
            timeout=self.upload_timeout,
        )
        return response.content

    async def health_check(self) -> bool:
        """Check if the store is reachable."""
        try:
            client = self._ensure_client()
            response = await client.get("/rest/v1/", timeout=5.0)
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.warning("Store health check failed: %s", e)
            return False
