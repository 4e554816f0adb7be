from __future__ import annotations

from typing import Any, Dict

import httpx
import pytest
import pytest_asyncio

from imoto.cache import BackgroundRefresher, CacheManager
from imoto.services import VehicleService
from imoto.storage import MemoryStore
from imoto.supabase import SupabaseClient

SUPABASE_URL = "https://test.supabase.co"
VEHICLES_URL = f"{SUPABASE_URL}/rest/v1/vehicles"
SAVED_URL = f"{SUPABASE_URL}/rest/v1/saved_vehicles"

MINUTE = 60 * 1000


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_record(vehicle_id: str = "v1", user_id: str = "u1", **overrides: Any) -> Dict[str, Any]:
    record = {
        "id": vehicle_id,
        "user_id": user_id,
        "make": "Toyota",
        "model": "Corolla",
        "variant": "1.8 XS",
        "year": 2019,
        "price": 250000,
        "mileage": 60000,
        "transmission": "Manual",
        "fuel": "Petrol",
        "engine_capacity": "1.8",
        "body_type": "Sedan",
        "province": "Gauteng",
        "city": "Pretoria",
        "description": "One owner",
        "images": ["https://img.example/1.jpg"],
        "status": "active",
        "contact_privacy_enabled": False,
        "created_at": "2024-05-01T10:00:00+00:00",
        "updated_at": "2024-05-01T10:00:00+00:00",
        "users": {
            "id": user_id,
            "email": "thandi@example.com",
            "first_name": "Thandi",
            "last_name": "Mokoena",
            "phone": "0820000000",
            "profile_pic": "",
            "suburb": "Hatfield",
            "city": "Pretoria",
            "province": "Gauteng",
        },
    }
    record.update(overrides)
    return record


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(capacity=10 * 1024 * 1024)


@pytest.fixture
def cache(store: MemoryStore, clock: FakeClock) -> CacheManager:
    return CacheManager(store, clock=clock)


@pytest_asyncio.fixture
async def http():
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def supabase(http: httpx.AsyncClient) -> SupabaseClient:
    return SupabaseClient(
        http,
        url=SUPABASE_URL,
        api_key="anon-key",
        max_retries=0,
        initial_delay=0,
    )


@pytest.fixture
def service(supabase: SupabaseClient, cache: CacheManager) -> VehicleService:
    return VehicleService(supabase, cache, BackgroundRefresher())
