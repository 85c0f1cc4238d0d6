"""
Database Schemas for the Disaster Relief engine

Each stored Pydantic model below maps to a collection (lowercased class name):
hub, disasterevent, donation, victimrequest. The *Create / *Update models are
the request bodies accepted by the API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Optional

from bson import ObjectId
from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    EmailStr,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


class OrderedEnum(str, Enum):
    """String enum whose members compare by declaration order via `rank`."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)


class DisasterType(str, Enum):
    earthquake = "earthquake"
    flood = "flood"
    hurricane = "hurricane"
    wildfire = "wildfire"
    other = "other"


class Severity(OrderedEnum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class Urgency(OrderedEnum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class TrackingStatus(OrderedEnum):
    pending = "pending"
    allocated = "allocated"
    pickup = "pickup"
    in_transit = "in_transit"
    delivered = "delivered"
    fulfilled = "fulfilled"


class FulfilledStatus(OrderedEnum):
    pending = "pending"
    in_progress = "in_progress"
    fulfilled = "fulfilled"


def clean_items(items: Dict[str, int]) -> Dict[str, int]:
    """Strip item names, merge case variants, drop zero quantities and reject negative ones."""
    cleaned: Dict[str, int] = {}
    for name, qty in items.items():
        key = name.strip()
        if not key:
            raise ValueError("item names must not be empty")
        if "." in key or key.startswith("$"):
            raise ValueError(f"invalid item name {key!r}")
        if qty < 0:
            raise ValueError(f"quantity for {key!r} must not be negative")
        if qty == 0:
            continue
        key = find_item(cleaned, key) or key
        cleaned[key] = cleaned.get(key, 0) + qty
    return cleaned


def find_item(inventory: Dict[str, int], name: str) -> Optional[str]:
    """Inventory key matching `name` case-insensitively, if any."""
    if name in inventory:
        return name
    wanted = name.strip().casefold()
    for key in inventory:
        if key.strip().casefold() == wanted:
            return key
    return None


ItemMap = Annotated[Dict[str, int], AfterValidator(clean_items)]


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lon: float = Field(..., ge=-180, le=180, allow_inf_nan=False)


# ------------------ Hubs ------------------

class HubCreate(BaseModel):
    name: str = Field(..., min_length=1)
    location_name: str = Field(..., min_length=1)
    contact: Optional[str] = None
    inventory: ItemMap = Field(default_factory=dict)
    # Optional explicit coordinates; otherwise resolved from location_name
    lat: Optional[float] = Field(None, ge=-90, le=90, allow_inf_nan=False)
    lon: Optional[float] = Field(None, ge=-180, le=180, allow_inf_nan=False)

    @field_validator("contact", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        return _blank_to_none(value)

    @model_validator(mode="after")
    def check_coordinates(self):
        if (self.lat is None) != (self.lon is None):
            raise ValueError("lat and lon must be given together")
        return self


class Hub(HubCreate):
    id: str = Field(default_factory=new_id)
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lon: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lon=self.lon)


class InventoryUpdate(BaseModel):
    inventory: ItemMap


# ------------------ Disaster events ------------------

class DisasterEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    source_text: str
    location_name: str
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lon: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    disaster_type: DisasterType = DisasterType.other
    severity: Severity = Severity.medium
    created_at: datetime = Field(default_factory=utcnow)


class PredictRequest(BaseModel):
    text: str = Field(..., min_length=1, validation_alias=AliasChoices("text", "tweet"))


# ------------------ Status history ------------------

class TrackingEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    status: str
    note: Optional[str] = None
    actor: Optional[str] = None


# ------------------ Donations ------------------

class DonationCreate(BaseModel):
    donor_name: str = Field(..., min_length=1)
    donor_email: Optional[EmailStr] = None
    donor_phone: Optional[str] = None
    amount: float = Field(0, ge=0, allow_inf_nan=False)
    items: ItemMap = Field(default_factory=dict)
    notes: Optional[str] = None

    @field_validator("donor_email", "donor_phone", "notes", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        return _blank_to_none(value)


class Donation(DonationCreate):
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    tracking_status: TrackingStatus = TrackingStatus.pending
    assigned_hub_id: Optional[str] = None
    tracking_history: List[TrackingEntry] = Field(default_factory=list)

    @computed_field
    @property
    def allocated_status(self) -> str:
        # Legacy three-value view; tracking_status is the stored field
        if self.tracking_status is TrackingStatus.pending:
            return "pending"
        if self.tracking_status is TrackingStatus.fulfilled:
            return "fulfilled"
        return "allocated"


class TrackingUpdate(BaseModel):
    tracking_status: TrackingStatus
    tracking_note: Optional[str] = None
    hub_id: Optional[str] = None
    override: bool = False

    @field_validator("tracking_note", "hub_id", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        return _blank_to_none(value)


# ------------------ Victim requests ------------------

class VictimRequestCreate(BaseModel):
    victim_name: str = Field(..., min_length=1)
    victim_phone: Optional[str] = None
    location_name: str = Field(..., min_length=1)
    urgency: Urgency = Urgency.medium
    requested_items: ItemMap = Field(default_factory=dict)
    notes: Optional[str] = None
    lat: Optional[float] = Field(None, ge=-90, le=90, allow_inf_nan=False)
    lon: Optional[float] = Field(None, ge=-180, le=180, allow_inf_nan=False)

    @field_validator("victim_phone", "notes", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        return _blank_to_none(value)

    @model_validator(mode="after")
    def check_coordinates(self):
        if (self.lat is None) != (self.lon is None):
            raise ValueError("lat and lon must be given together")
        return self


class VictimRequest(VictimRequestCreate):
    id: str = Field(default_factory=new_id)
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lon: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    created_at: datetime = Field(default_factory=utcnow)
    fulfilled_status: FulfilledStatus = FulfilledStatus.pending
    matched_hub_id: Optional[str] = None
    match_score: Optional[int] = Field(None, ge=0, le=100)
    match_distance_km: Optional[float] = None
    status_history: List[TrackingEntry] = Field(default_factory=list)


class RequestStatusUpdate(BaseModel):
    fulfilled_status: FulfilledStatus
    note: Optional[str] = None


# ------------------ Read models ------------------

class NearbyHub(BaseModel):
    id: str
    name: str
    location_name: str
    lat: float
    lon: float
    distance_km: float


class MatchedHub(NearbyHub):
    match_score: int


class Stats(BaseModel):
    total_hubs: int = 0
    total_donations: int = 0
    total_requests: int = 0
    total_events: int = 0
    pending_requests: int = 0
    total_donated_amount: float = 0.0
    donations_by_status: Dict[str, int] = Field(default_factory=dict)
    requests_by_status: Dict[str, int] = Field(default_factory=dict)


class AdminAuthRequest(BaseModel):
    key: str
