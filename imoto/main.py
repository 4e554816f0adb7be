"""FastAPI application main module."""
import logging
from typing import List, Optional
from fastapi import FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from imoto.config import settings
from imoto.models import DeleteRequest, Vehicle, VehicleFilters, VehicleFormData, VehicleUpdate
from imoto.services import VehicleError, close_service, get_service, init_service

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Imoto Marketplace API",
    description="Vehicle listings with a stale-while-revalidate cache in front of Supabase",
    version="0.1.0"
)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    await init_service()


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup services on application shutdown."""
    await close_service()


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    """Log unexpected errors and hide their details from the client."""
    logger.error(f"Unexpected error processing {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user_id


def _http_error(error: VehicleError) -> HTTPException:
    codes = {
        "not_found": status.HTTP_404_NOT_FOUND,
        "forbidden": status.HTTP_403_FORBIDDEN,
        "23505": status.HTTP_409_CONFLICT,  # unique violation
        "23503": status.HTTP_409_CONFLICT,  # foreign key violation
    }
    return HTTPException(
        status_code=codes.get(error.code or "", status.HTTP_502_BAD_GATEWAY),
        detail=error.message,
    )


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "imoto-marketplace"}


@app.get("/health")
async def health():
    """Health check endpoint for monitoring."""
    return {"status": "healthy"}


@app.get("/api/vehicles", response_model=List[Vehicle])
async def list_vehicles(listing_status: str = Query("active", alias="status"), refresh: bool = False):
    return await get_service().get_vehicles(listing_status, force_refresh=refresh)


@app.get("/api/vehicles/search", response_model=List[Vehicle])
async def search_vehicles(q: str = ""):
    return await get_service().search_vehicles(q)


@app.post("/api/vehicles/filter", response_model=List[Vehicle])
async def filter_vehicles(filters: VehicleFilters):
    return await get_service().filter_vehicles(filters)


@app.get("/api/vehicles/{vehicle_id}", response_model=Vehicle)
async def get_vehicle(vehicle_id: str, refresh: bool = False):
    vehicle = await get_service().get_vehicle_by_id(vehicle_id, force_refresh=refresh)
    if vehicle is None:
        logger.info(f"Vehicle not found: {vehicle_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found")
    return vehicle


@app.post("/api/vehicles", response_model=Vehicle, status_code=status.HTTP_201_CREATED)
async def create_vehicle(data: VehicleFormData, x_user_id: Optional[str] = Header(default=None)):
    user_id = _require_user(x_user_id)
    try:
        vehicle = await get_service().create_vehicle(data, user_id)
    except VehicleError as e:
        raise _http_error(e)
    logger.info(f"Vehicle {vehicle.id} created by {user_id}")
    return vehicle


@app.put("/api/vehicles/{vehicle_id}", response_model=Vehicle)
async def update_vehicle(vehicle_id: str, patch: VehicleUpdate):
    try:
        vehicle = await get_service().update_vehicle(vehicle_id, patch)
    except VehicleError as e:
        raise _http_error(e)
    if vehicle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found")
    return vehicle


@app.delete("/api/vehicles/{vehicle_id}")
async def delete_vehicle(
    vehicle_id: str,
    body: Optional[DeleteRequest] = None,
    x_user_id: Optional[str] = Header(default=None),
):
    """
    Soft-delete a listing owned by the caller.

    Deleting an already deleted listing succeeds with an explanatory message.
    """
    user_id = _require_user(x_user_id)
    reason = body.reason if body else None
    try:
        deleted = await get_service().soft_delete_vehicle(vehicle_id, user_id, reason)
    except VehicleError as e:
        logger.error(f"Delete of {vehicle_id} by {user_id} rejected: {e.message}")
        raise _http_error(e)
    if not deleted:
        return {"success": True, "message": "Vehicle already deleted"}
    return {"success": True}


@app.get("/api/users/{user_id}/vehicles", response_model=List[Vehicle])
async def user_vehicles(user_id: str, refresh: bool = False):
    return await get_service().get_user_vehicles(user_id, force_refresh=refresh)


@app.get("/api/users/{user_id}/saved-vehicles", response_model=List[Vehicle])
async def saved_vehicles(user_id: str, refresh: bool = False):
    return await get_service().get_saved_vehicles(user_id, force_refresh=refresh)


@app.get("/api/users/{user_id}/saved-vehicles/{vehicle_id}")
async def is_saved(user_id: str, vehicle_id: str):
    return {"saved": await get_service().is_vehicle_saved(user_id, vehicle_id)}


@app.post("/api/users/{user_id}/saved-vehicles/{vehicle_id}")
async def save_vehicle(user_id: str, vehicle_id: str):
    if not await get_service().save_vehicle(user_id, vehicle_id):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to save vehicle")
    return {"success": True}


@app.delete("/api/users/{user_id}/saved-vehicles/{vehicle_id}")
async def unsave_vehicle(user_id: str, vehicle_id: str):
    if not await get_service().unsave_vehicle(user_id, vehicle_id):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to unsave vehicle")
    return {"success": True}


@app.get("/api/cache/stats")
async def cache_stats():
    return get_service().cache.get_stats().model_dump()


@app.post("/api/cache/clear")
async def clear_cache(user_id: Optional[str] = None):
    """Clear one user's caches, or everything when no user is given."""
    cache = get_service().cache
    if user_id:
        cache.clear_user_cache(user_id)
    else:
        cache.clear_all()
    return {"status": "cleared", "user_id": user_id}
