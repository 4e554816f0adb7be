"""Pydantic models for vehicle listings and their database records."""
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class Vehicle(BaseModel):
    """Vehicle listing as served to the marketplace UI."""

    id: str = Field(..., description="Listing ID")
    user_id: str = Field(..., description="Owner (seller) ID")
    make: str
    model: str
    variant: str = ""
    year: Optional[int] = None
    price: Optional[float] = None
    mileage: Optional[int] = None
    transmission: Optional[str] = None
    fuel: Optional[str] = None
    fuel_type: Optional[str] = None
    engine_capacity: str = ""
    body_type: str = ""
    province: Optional[str] = None
    city: Optional[str] = None
    description: str = ""
    images: List[str] = Field(default_factory=list)
    status: str = "active"
    contact_privacy_enabled: bool = False
    seller_name: str = ""
    seller_email: str = ""
    seller_phone: str = ""
    seller_suburb: str = ""
    seller_city: str = ""
    seller_province: str = ""
    seller_profile_pic: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Vehicle":
        """
        Map a `vehicles` row (with the joined `users` row) to a Vehicle.

        Seller name falls back from "first last" to either name alone and
        finally to the local part of the seller's email.
        """
        user = data.get("users") or {}
        first, last = user.get("first_name"), user.get("last_name")
        if first and last:
            seller_name = f"{first} {last}"
        else:
            email = user.get("email") or ""
            seller_name = first or last or email.split("@")[0]

        engine_capacity = data.get("engine_capacity")
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            make=data.get("make") or "",
            model=data.get("model") or "",
            variant=data.get("variant") or "",
            year=data.get("year"),
            price=data.get("price"),
            mileage=data.get("mileage"),
            transmission=data.get("transmission"),
            fuel=data.get("fuel"),
            fuel_type=data.get("fuel"),
            engine_capacity=str(engine_capacity) if engine_capacity else "",
            body_type=data.get("body_type") or "",
            province=data.get("province"),
            city=data.get("city"),
            description=data.get("description") or "",
            images=data.get("images") or [],
            status=data.get("status") or "active",
            contact_privacy_enabled=bool(data.get("contact_privacy_enabled") or False),
            seller_name=seller_name,
            seller_email=user.get("email") or "",
            seller_phone=user.get("phone") or "",
            seller_suburb=user.get("suburb") or "",
            seller_city=user.get("city") or "",
            seller_province=user.get("province") or "",
            seller_profile_pic=user.get("profile_pic") or "",
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class VehicleFormData(BaseModel):
    """Payload of the listing upload form."""

    make: str
    model: str
    variant: str = ""
    year: int
    price: float
    mileage: int
    transmission: str
    fuel: str
    engine_capacity: str = ""
    body_type: str = ""
    province: str
    city: str
    description: str = ""
    images: List[str] = Field(default_factory=list)
    contact_privacy_enabled: bool = False

    def to_record(self, user_id: str, now: str) -> Dict[str, Any]:
        record = self.model_dump()
        record.update(
            user_id=user_id,
            status="active",
            created_at=now,
            updated_at=now,
        )
        return record


class VehicleUpdate(BaseModel):
    """Partial update from the listing edit form; unset fields are left alone."""

    make: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    year: Optional[int] = None
    price: Optional[float] = None
    mileage: Optional[int] = None
    transmission: Optional[str] = None
    fuel: Optional[str] = None
    engine_capacity: Optional[str] = None
    body_type: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    description: Optional[str] = None
    images: Optional[List[str]] = None
    contact_privacy_enabled: Optional[bool] = None

    def to_patch(self, now: str) -> Dict[str, Any]:
        patch = self.model_dump(exclude_none=True)
        patch["updated_at"] = now
        return patch


class VehicleFilters(BaseModel):
    """Search form criteria. Empty or zero values are ignored."""

    query: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_year: Optional[int] = None
    max_year: Optional[int] = None
    min_mileage: Optional[int] = None
    max_mileage: Optional[int] = None
    fuel_type: Union[str, List[str], None] = None
    transmission: Optional[str] = None
    body_type: Union[str, List[str], None] = None
    engine_capacity_min: Optional[float] = None
    engine_capacity_max: Optional[float] = None
    province: Optional[str] = None
    city: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class DeleteRequest(BaseModel):
    reason: Optional[str] = None
