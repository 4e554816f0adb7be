"""Service layer: cache-aware vehicle data access over Supabase."""
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import httpx
from pydantic import TypeAdapter, ValidationError

from imoto.cache import BackgroundRefresher, CacheManager
from imoto.config import settings
from imoto.models import Vehicle, VehicleFilters, VehicleFormData, VehicleUpdate
from imoto.storage import SQLiteStore, build_store
from imoto.supabase import Filter, SupabaseClient, SupabaseError

logger = logging.getLogger(__name__)

VEHICLES_TABLE = "vehicles"
SAVED_VEHICLES_TABLE = "saved_vehicles"

VEHICLE_COLUMNS = (
    "id,user_id,make,model,variant,year,price,mileage,transmission,fuel,"
    "engine_capacity,body_type,province,city,description,images,status,"
    "contact_privacy_enabled,created_at,updated_at,"
    "users(id,email,first_name,last_name,phone,profile_pic,suburb,city,province)"
)
NEWEST_FIRST = "created_at.desc"

_vehicle_list = TypeAdapter(List[Vehicle])
_vehicle_one = TypeAdapter(Vehicle)

# characters with meaning inside a PostgREST logical filter
_RESERVED = re.compile(r"[,()*]")


class VehicleError(Exception):
    """A vehicle write could not be completed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _like(term: str) -> str:
    return f"*{_RESERVED.sub(' ', term.strip())}*"


def _any_of(column: str, values: List[str]) -> str:
    return ",".join(f"{column}.ilike.{_like(value)}" for value in values)


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class VehicleService:
    """
    Vehicle reads and writes with a stale-while-revalidate cache in front.

    Reads return cached data at once when present and refresh stale entries
    in the background. Failed fetches fall back to whatever is cached,
    however old, and then to an empty result. Writes go straight to Supabase
    and invalidate every cache entry they could have changed.
    """

    def __init__(
        self,
        client: SupabaseClient,
        cache: CacheManager,
        refresher: Optional[BackgroundRefresher] = None,
    ):
        self.client = client
        self.cache = cache
        self.keys = cache.keys
        self.refresher = refresher or BackgroundRefresher()

    def _read_cache(self, key: str, adapter: TypeAdapter, max_age: Optional[float] = None) -> Any:
        # expired entries are kept so a failed fetch can still fall back to them
        cached = self.cache.get(key, max_age, purge=False)
        if cached is None:
            return None
        try:
            return adapter.validate_python(cached)
        except ValidationError as e:
            logger.warning(f"[Vehicles] Cached payload for {key} no longer matches the model: {e}")
            self.cache.delete(key)
            return None

    async def _cached_read(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        adapter: TypeAdapter,
        empty: Callable[[], Any],
        force_refresh: bool,
    ) -> Any:
        if not force_refresh:
            cached = self._read_cache(key, adapter)
            if cached is not None:
                if self.cache.is_stale(key) and not self.refresher.in_progress(key):
                    logger.info(f"[Vehicles] {key} is stale, refreshing in background")
                    self.refresher.schedule(
                        key, lambda: self._cached_read(key, fetch, adapter, empty, True)
                    )
                return cached

        logger.info(f"[Vehicles] Fetching {key} from Supabase")
        try:
            value = await fetch()
        except Exception as e:
            logger.error(f"[Vehicles] Fetch failed for {key}: {e}")
            stale = self._read_cache(key, adapter, max_age=math.inf)
            if stale is not None:
                logger.warning(f"[Vehicles] Using stale cache for {key}")
                return stale
            return empty()

        if value is None:
            self.cache.delete(key)
            return empty()
        self.cache.set(key, adapter.dump_python(value, mode="json"))
        return value

    async def _fetch_vehicles(self, filters: List[Filter]) -> List[Vehicle]:
        rows = await self.client.fetch_list(
            VEHICLES_TABLE, filters, select=VEHICLE_COLUMNS, order=NEWEST_FIRST
        )
        return [Vehicle.from_record(row) for row in rows]

    async def get_vehicles(self, status: str = "active", force_refresh: bool = False) -> List[Vehicle]:
        """Listings with the given status, newest first."""
        return await self._cached_read(
            self.keys.vehicles(status),
            lambda: self._fetch_vehicles([("status", f"eq.{status}")]),
            _vehicle_list,
            list,
            force_refresh,
        )

    async def get_vehicle_by_id(self, vehicle_id: str, force_refresh: bool = False) -> Optional[Vehicle]:
        async def fetch() -> Optional[Vehicle]:
            record = await self.client.fetch_one(VEHICLES_TABLE, vehicle_id, select=VEHICLE_COLUMNS)
            return Vehicle.from_record(record) if record else None

        return await self._cached_read(
            self.keys.vehicle_details(vehicle_id),
            fetch,
            _vehicle_one,
            lambda: None,
            force_refresh,
        )

    async def get_user_vehicles(self, user_id: str, force_refresh: bool = False) -> List[Vehicle]:
        """All listings owned by ``user_id``, whatever their status."""
        return await self._cached_read(
            self.keys.user_vehicles(user_id),
            lambda: self._fetch_vehicles([("user_id", f"eq.{user_id}")]),
            _vehicle_list,
            list,
            force_refresh,
        )

    async def get_saved_vehicles(self, user_id: str, force_refresh: bool = False) -> List[Vehicle]:
        async def fetch() -> List[Vehicle]:
            rows = await self.client.fetch_list(
                SAVED_VEHICLES_TABLE,
                [("user_id", f"eq.{user_id}")],
                select=f"vehicle_id,vehicles({VEHICLE_COLUMNS})",
            )
            return [Vehicle.from_record(row["vehicles"]) for row in rows if row.get("vehicles")]

        return await self._cached_read(
            self.keys.saved_vehicles(user_id),
            fetch,
            _vehicle_list,
            list,
            force_refresh,
        )

    async def invalidate_caches(self, user_id: Optional[str] = None) -> None:
        """Drop the active listing cache and, given a user, their own caches."""
        logger.info("[Cache] Invalidating vehicle caches")
        self.cache.delete(self.keys.vehicles("active"))
        if user_id:
            self.cache.clear_user_cache(user_id)

    async def create_vehicle(self, data: VehicleFormData, user_id: str) -> Vehicle:
        try:
            record = await self.client.create(
                VEHICLES_TABLE, data.to_record(user_id, _now_iso()), select=VEHICLE_COLUMNS
            )
        except SupabaseError as e:
            logger.error(f"[Vehicle Create] Error: {e}")
            raise VehicleError(e.friendly_message(), code=e.code) from e

        await self.invalidate_caches(user_id)
        return Vehicle.from_record(record)

    async def update_vehicle(self, vehicle_id: str, patch: VehicleUpdate) -> Optional[Vehicle]:
        """Apply ``patch``; None when no such vehicle exists."""
        try:
            record = await self.client.update(
                VEHICLES_TABLE, vehicle_id, patch.to_patch(_now_iso()), select=VEHICLE_COLUMNS
            )
        except SupabaseError as e:
            logger.error(f"[Vehicle Update] Error for {vehicle_id}: {e}")
            raise VehicleError(e.friendly_message(), code=e.code) from e

        self.cache.delete(self.keys.vehicle_details(vehicle_id))
        if record is None:
            return None
        await self.invalidate_caches(record.get("user_id"))
        return Vehicle.from_record(record)

    async def delete_vehicle(self, vehicle_id: str) -> bool:
        # owner is needed to invalidate the per-user caches afterwards
        try:
            existing = await self.client.fetch_one(VEHICLES_TABLE, vehicle_id, select="id,user_id")
        except SupabaseError as e:
            logger.warning(f"[Vehicle Delete] Owner lookup failed for {vehicle_id}: {e}")
            existing = None
        owner = existing.get("user_id") if existing else None
        try:
            await self.client.delete(VEHICLES_TABLE, vehicle_id)
        except SupabaseError as e:
            logger.error(f"[Vehicle Delete] Error for {vehicle_id}: {e}")
            return False

        await self.invalidate_caches(owner)
        self.cache.delete(self.keys.vehicle_details(vehicle_id))
        return True

    async def soft_delete_vehicle(self, vehicle_id: str, user_id: str, reason: Optional[str] = None) -> bool:
        """
        Retire a listing on behalf of its owner.

        Returns False when the listing was already deleted. Raises
        VehicleError with code ``not_found`` or ``forbidden``.
        """
        try:
            existing = await self.client.fetch_one(
                VEHICLES_TABLE, vehicle_id, select="id,user_id,deleted_at,is_deleted"
            )
        except SupabaseError as e:
            raise VehicleError(e.friendly_message(), code=e.code) from e

        if existing is None:
            raise VehicleError("Vehicle not found", code="not_found")
        if str(existing.get("user_id")) != user_id:
            raise VehicleError("You don't own this vehicle", code="forbidden")
        if existing.get("is_deleted") or existing.get("deleted_at"):
            logger.warning(f"[Vehicle Delete] {vehicle_id} already deleted")
            return False

        now = _now_iso()
        updates = {
            "is_deleted": True,
            "deleted_at": now,
            "status": "inactive",
            "updated_at": now,
        }
        if reason:
            updates["deletion_reason"] = reason
        try:
            await self.client.update(
                VEHICLES_TABLE, vehicle_id, updates, select="id", filters=[("is_deleted", "eq.false")]
            )
        except SupabaseError as e:
            logger.error(f"[Vehicle Delete] Soft delete failed for {vehicle_id}: {e}")
            raise VehicleError(e.friendly_message(), code=e.code) from e

        await self.invalidate_caches(user_id)
        self.cache.delete(self.keys.vehicle_details(vehicle_id))
        return True

    async def search_vehicles(self, query: str) -> List[Vehicle]:
        """Active listings whose make, model or variant contains ``query``."""
        if not query or not query.strip():
            return await self.get_vehicles()
        filters = [
            ("or", f"({_any_of('make', [query])},{_any_of('model', [query])},{_any_of('variant', [query])})"),
            ("status", "eq.active"),
        ]
        try:
            return await self._fetch_vehicles(filters)
        except Exception as e:
            logger.error(f"[Vehicles] Search failed for {query!r}: {e}")
            return []

    async def filter_vehicles(self, filters: VehicleFilters) -> List[Vehicle]:
        try:
            return await self._fetch_vehicles(build_filter_params(filters))
        except Exception as e:
            logger.error(f"[Vehicles] Filter failed: {e}")
            return []

    async def save_vehicle(self, user_id: str, vehicle_id: str) -> bool:
        try:
            await self.client.create(
                SAVED_VEHICLES_TABLE, {"user_id": user_id, "vehicle_id": vehicle_id}
            )
        except SupabaseError as e:
            logger.error(f"[Saved] Error saving {vehicle_id} for {user_id}: {e}")
            return False
        self.cache.delete(self.keys.saved_vehicles(user_id))
        return True

    async def unsave_vehicle(self, user_id: str, vehicle_id: str) -> bool:
        try:
            await self.client.delete_where(
                SAVED_VEHICLES_TABLE,
                [("user_id", f"eq.{user_id}"), ("vehicle_id", f"eq.{vehicle_id}")],
            )
        except SupabaseError as e:
            logger.error(f"[Saved] Error unsaving {vehicle_id} for {user_id}: {e}")
            return False
        self.cache.delete(self.keys.saved_vehicles(user_id))
        return True

    async def is_vehicle_saved(self, user_id: str, vehicle_id: str) -> bool:
        try:
            rows = await self.client.fetch_list(
                SAVED_VEHICLES_TABLE,
                [("user_id", f"eq.{user_id}"), ("vehicle_id", f"eq.{vehicle_id}"), ("limit", "1")],
                select="id",
            )
        except SupabaseError as e:
            logger.error(f"[Saved] Error checking {vehicle_id} for {user_id}: {e}")
            return False
        return bool(rows)


def build_filter_params(filters: VehicleFilters) -> List[Filter]:
    """
    Translate search form criteria into PostgREST query parameters.

    Zero and empty values are ignored, as are an engine capacity minimum of
    1.0 or less, a maximum of 8.0 or more, and a transmission of "all".
    """
    params: List[Filter] = [("status", "eq.active")]
    any_of_groups: List[str] = []

    if filters.query and filters.query.strip():
        any_of_groups.append(
            ",".join(_any_of(column, [filters.query]) for column in ("make", "model", "variant"))
        )

    ranges: List[Tuple[str, Optional[float], Optional[float]]] = [
        ("price", filters.min_price, filters.max_price),
        ("year", filters.min_year, filters.max_year),
        ("mileage", filters.min_mileage, filters.max_mileage),
    ]
    for column, low, high in ranges:
        if low and low > 0:
            params.append((column, f"gte.{_number(low)}"))
        if high and high > 0:
            params.append((column, f"lte.{_number(high)}"))

    for column, value in (("fuel", filters.fuel_type), ("body_type", filters.body_type)):
        if isinstance(value, list):
            values = [v for v in value if v and v.strip()]
            if values:
                any_of_groups.append(_any_of(column, values))
        elif value and value.strip():
            params.append((column, f"ilike.{_like(value)}"))

    if filters.transmission and filters.transmission.strip() and filters.transmission.lower() != "all":
        params.append(("transmission", f"ilike.{_like(filters.transmission)}"))

    if filters.engine_capacity_min is not None and filters.engine_capacity_min > 1.0:
        params.append(("engine_capacity", f"gte.{_number(filters.engine_capacity_min)}"))
    if filters.engine_capacity_max is not None and filters.engine_capacity_max < 8.0:
        params.append(("engine_capacity", f"lte.{_number(filters.engine_capacity_max)}"))

    for column, value in (("province", filters.province), ("city", filters.city)):
        if value and value.strip():
            params.append((column, f"ilike.{_like(value)}"))

    if len(any_of_groups) == 1:
        params.append(("or", f"({any_of_groups[0]})"))
    elif any_of_groups:
        params.append(("and", "(" + ",".join(f"or({group})" for group in any_of_groups) + ")"))
    return params


# Global service instance (initialized on application startup)
_service: Optional[VehicleService] = None
_http: Optional[httpx.AsyncClient] = None


async def init_service() -> VehicleService:
    """Create the shared HTTP client, cache and VehicleService."""
    global _service, _http
    if _service is None:
        _http = httpx.AsyncClient()
        client = SupabaseClient.from_settings(_http, settings)
        cache = CacheManager.from_settings(build_store(settings), settings)
        _service = VehicleService(client, cache)
        logger.info(f"Vehicle service ready (store={type(cache.store).__name__})")
    return _service


async def close_service() -> None:
    """Wait for background refreshes, then release the HTTP client and store."""
    global _service, _http
    if _service is not None:
        await _service.refresher.drain()
        if isinstance(_service.cache.store, SQLiteStore):
            _service.cache.store.close()
        _service = None
    if _http is not None:
        await _http.aclose()
        _http = None


def get_service() -> VehicleService:
    if _service is None:
        raise RuntimeError("Vehicle service is not initialized")
    return _service
