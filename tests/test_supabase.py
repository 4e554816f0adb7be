from __future__ import annotations

import httpx
import pytest
import respx

from imoto.supabase import SupabaseClient, SupabaseError

from tests.conftest import SUPABASE_URL, VEHICLES_URL


@pytest.mark.asyncio
@respx.mock
async def test_retries_server_errors_then_succeeds(http: httpx.AsyncClient) -> None:
    client = SupabaseClient(http, url=SUPABASE_URL, api_key="k", max_retries=3, initial_delay=0)
    route = respx.get(VEHICLES_URL).mock(
        side_effect=[
            httpx.Response(503),
            httpx.Response(429),
            httpx.Response(200, json=[{"id": "v1"}]),
        ]
    )

    rows = await client.fetch_list("vehicles", [("status", "eq.active")])

    assert rows == [{"id": "v1"}]
    assert route.call_count == 3


@pytest.mark.asyncio
@respx.mock
async def test_retries_network_errors_until_budget_exhausted(http: httpx.AsyncClient) -> None:
    client = SupabaseClient(http, url=SUPABASE_URL, api_key="k", max_retries=2, initial_delay=0)
    route = respx.get(VEHICLES_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))

    with pytest.raises(SupabaseError):
        await client.fetch_list("vehicles")

    assert route.call_count == 3


@pytest.mark.asyncio
@respx.mock
async def test_client_errors_are_not_retried(http: httpx.AsyncClient) -> None:
    client = SupabaseClient(http, url=SUPABASE_URL, api_key="k", max_retries=3, initial_delay=0)
    route = respx.get(VEHICLES_URL).mock(
        return_value=httpx.Response(400, json={"message": "bad column", "code": "42703"})
    )

    with pytest.raises(SupabaseError) as exc_info:
        await client.fetch_list("vehicles")

    assert route.call_count == 1
    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "42703"
    assert exc_info.value.message == "bad column"


@pytest.mark.asyncio
@respx.mock
async def test_persistent_server_error_raises_after_retries(http: httpx.AsyncClient) -> None:
    client = SupabaseClient(http, url=SUPABASE_URL, api_key="k", max_retries=1, initial_delay=0)
    route = respx.get(VEHICLES_URL).mock(return_value=httpx.Response(502, text="bad gateway"))

    with pytest.raises(SupabaseError) as exc_info:
        await client.fetch_list("vehicles")

    assert route.call_count == 2
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
@respx.mock
async def test_requests_carry_auth_headers(http: httpx.AsyncClient) -> None:
    client = SupabaseClient(http, url=f"{SUPABASE_URL}/", api_key="anon", access_token="user-jwt")
    route = respx.get(VEHICLES_URL).mock(return_value=httpx.Response(200, json=[]))

    assert await client.fetch_one("vehicles", "v1") is None

    request = route.calls.last.request
    assert request.headers["apikey"] == "anon"
    assert request.headers["Authorization"] == "Bearer user-jwt"
    assert request.url.params["id"] == "eq.v1"
    assert request.url.params["limit"] == "1"


@pytest.mark.asyncio
async def test_backoff_is_exponential_and_capped(http: httpx.AsyncClient) -> None:
    client = SupabaseClient(
        http, url=SUPABASE_URL, api_key="k", initial_delay=1.0, max_delay=10.0
    )
    assert [client._backoff(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


@pytest.mark.parametrize(
    "message, code, expected",
    [
        ("Invalid Refresh Token: Already Used", None, "Your session has expired. Please sign in again."),
        ("JWT expired", "PGRST301", "Your session has expired. Please sign in again."),
        ("row not found", None, "The requested resource was not found."),
        ("JSON object requested, multiple (or no) rows returned", "PGRST116", "The requested resource was not found."),
        ("duplicate key value violates unique constraint", "23505", "This item already exists."),
        ("violates foreign key constraint", "23503", "Cannot complete this action due to related data."),
        ("something odd", None, "something odd"),
        ("", None, "An unexpected error occurred. Please try again."),
    ],
)
def test_friendly_message(message: str, code: str, expected: str) -> None:
    assert SupabaseError(message, code=code).friendly_message() == expected


@pytest.mark.asyncio
@respx.mock
async def test_inserts_are_sent_once(http: httpx.AsyncClient) -> None:
    client = SupabaseClient(http, url=SUPABASE_URL, api_key="k", max_retries=3, initial_delay=0)
    route = respx.post(VEHICLES_URL).mock(
        side_effect=[
            httpx.ReadTimeout("timed out"),
            httpx.Response(201, json=[{"id": "v1"}]),
        ]
    )

    with pytest.raises(SupabaseError):
        await client.create("vehicles", {"make": "VW"})

    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_insert_server_error_is_not_retried(http: httpx.AsyncClient) -> None:
    client = SupabaseClient(http, url=SUPABASE_URL, api_key="k", max_retries=3, initial_delay=0)
    route = respx.post(VEHICLES_URL).mock(return_value=httpx.Response(503))

    with pytest.raises(SupabaseError) as exc_info:
        await client.create("vehicles", {"make": "VW"})

    assert route.call_count == 1
    assert exc_info.value.status_code == 503
