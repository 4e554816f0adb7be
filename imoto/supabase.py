"""Async client for the Supabase REST (PostgREST) API."""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from imoto.config import Settings

logger = logging.getLogger(__name__)

Filter = Tuple[str, str]

# PostgREST error code for "no rows returned" on a single-object request
NOT_FOUND_CODE = "PGRST116"

RETRY_STATUS_CODES = {408, 429}


class SupabaseError(Exception):
    """A request to the remote data service failed."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def friendly_message(self) -> str:
        """User-facing text for this error."""
        message = self.message or ""
        if "Invalid Refresh Token" in message or "JWT expired" in message:
            return "Your session has expired. Please sign in again."
        if "not found" in message or self.code == NOT_FOUND_CODE:
            return "The requested resource was not found."
        if "unique constraint" in message:
            return "This item already exists."
        if "foreign key constraint" in message:
            return "Cannot complete this action due to related data."
        return message or "An unexpected error occurred. Please try again."


class SupabaseClient:
    """
    Minimal table client over PostgREST.

    Every request is retried with exponential backoff on transport errors,
    timeouts, 5xx, 408 and 429 responses. Other 4xx responses fail at once.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
    ):
        self._http = http
        self.base_url = f"{url.rstrip('/')}/rest/v1"
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Accept": "application/json",
        }

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings: Settings) -> "SupabaseClient":
        return cls(
            http,
            url=settings.supabase_url,
            api_key=settings.supabase_anon_key,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
        )

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Sequence[Filter] = (),
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        retry: bool = True,
    ) -> httpx.Response:
        """Send one PostgREST request, retrying transient failures when ``retry`` is set."""
        url = f"{self.base_url}/{table}"
        request_headers = {**self.headers, **(headers or {})}
        max_retries = self.max_retries if retry else 0
        attempt = 0
        while True:
            try:
                response = await self._http.request(
                    method,
                    url,
                    params=list(params),
                    json=json,
                    headers=request_headers,
                    timeout=self.timeout,
                )
            except httpx.TransportError as e:
                if attempt >= max_retries:
                    raise SupabaseError(f"Request to {table} failed: {e}") from e
                delay = self._backoff(attempt)
                logger.warning(
                    f"[Supabase] Network error on {method} {table}, retrying after {delay:.2f}s "
                    f"(attempt {attempt + 1}/{max_retries}): {e}"
                )
            else:
                retryable = response.status_code >= 500 or response.status_code in RETRY_STATUS_CODES
                if not retryable or attempt >= max_retries:
                    if response.is_error:
                        raise self._error_from(response)
                    return response
                delay = self._backoff(attempt)
                logger.warning(
                    f"[Supabase] {method} {table} returned {response.status_code}, retrying after "
                    f"{delay:.2f}s (attempt {attempt + 1}/{max_retries})"
                )
            await asyncio.sleep(delay)
            attempt += 1

    def _backoff(self, attempt: int) -> float:
        return min(self.initial_delay * (2 ** attempt), self.max_delay)

    @staticmethod
    def _error_from(response: httpx.Response) -> SupabaseError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("message") or body.get("error") or response.reason_phrase
        return SupabaseError(message, code=body.get("code"), status_code=response.status_code)

    async def fetch_list(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        *,
        select: str = "*",
        order: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = [("select", select), *filters]
        if order:
            params.append(("order", order))
        response = await self._request("GET", table, params=params)
        return response.json() or []

    async def fetch_one(
        self,
        table: str,
        record_id: str,
        *,
        select: str = "*",
        filters: Sequence[Filter] = (),
    ) -> Optional[Dict[str, Any]]:
        rows = await self.fetch_list(
            table, [("id", f"eq.{record_id}"), *filters, ("limit", "1")], select=select
        )
        return rows[0] if rows else None

    async def create(self, table: str, payload: Dict[str, Any], *, select: str = "*") -> Dict[str, Any]:
        """Insert one row and return it. Inserts are never retried."""
        response = await self._request(
            "POST",
            table,
            params=[("select", select)],
            json=[payload],
            headers={"Prefer": "return=representation"},
            retry=False,
        )
        rows = response.json() or []
        if not rows:
            raise SupabaseError(f"Insert into {table} returned no rows")
        return rows[0]

    async def update(
        self,
        table: str,
        record_id: str,
        patch: Dict[str, Any],
        *,
        select: str = "*",
        filters: Sequence[Filter] = (),
    ) -> Optional[Dict[str, Any]]:
        """Patch one row; None when no row matched."""
        response = await self._request(
            "PATCH",
            table,
            params=[("id", f"eq.{record_id}"), *filters, ("select", select)],
            json=patch,
            headers={"Prefer": "return=representation"},
        )
        rows = response.json() or []
        return rows[0] if rows else None

    async def delete(self, table: str, record_id: str) -> bool:
        return await self.delete_where(table, [("id", f"eq.{record_id}")])

    async def delete_where(self, table: str, filters: Sequence[Filter]) -> bool:
        await self._request("DELETE", table, params=filters, headers={"Prefer": "return=minimal"})
        return True
