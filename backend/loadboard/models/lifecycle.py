"""Domain models for the load, bid, and tracking lifecycle."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoadStatus(str, Enum):
    """Lifecycle status for a posted load."""

    POSTED = "Posted"
    BIDDING = "Bidding"
    ASSIGNED = "Assigned"
    IN_TRANSIT = "In Transit"
    POD_UPLOADED = "POD_uploaded"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class BidStatus(str, Enum):
    """Lifecycle status for a carrier bid."""

    PENDING_APPROVAL = "PendingApproval"
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"


class BidDecision(str, Enum):
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"


class TrackingStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class LoadType(str, Enum):
    OTR = "OTR"
    DRAYAGE = "DRAYAGE"


class VehicleType(str, Enum):
    TRUCK = "Truck"
    TRAILER = "Trailer"
    CONTAINER = "Container"
    REEFER = "Reefer"
    FLATBED = "Flatbed"
    TANKER = "Tanker"
    BOX_TRUCK = "Box Truck"
    POWER_ONLY = "Power Only"


class RateType(str, Enum):
    PER_MILE = "Per Mile"
    FLAT_RATE = "Flat Rate"
    PER_HUNDRED_WEIGHT = "Per Hundred Weight"


class GeoPoint(BaseModel):
    lat: float
    lon: float


class LoadLocation(BaseModel):
    """Origin or destination of a load."""

    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    zip_code: Optional[str] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lon: Optional[float] = Field(default=None, ge=-180, le=180)

    def coordinates(self) -> Optional[GeoPoint]:
        if self.lat is None or self.lon is None:
            return None
        return GeoPoint(lat=self.lat, lon=self.lon)

    def label(self) -> str:
        return f"{self.city}, {self.state}"

    def geocode_query(self) -> str:
        parts = [self.address_line1, self.address_line2, self.city, self.state, self.zip_code]
        return ", ".join(part.strip() for part in parts if part and part.strip())


class ProofFile(BaseModel):
    """Reference to an uploaded proof-of-delivery file."""

    file_name: str = Field(min_length=1)
    file_url: str = Field(min_length=1)
    content_type: Optional[str] = None
    storage_key: Optional[str] = None
    uploaded_at: Optional[datetime] = None


# ==================== LOADS ====================

class LoadCreateRequest(BaseModel):
    """Request payload to post a new load."""

    shipper_id: Optional[str] = None
    origin: LoadLocation
    destination: LoadLocation
    weight: float = Field(gt=0)
    commodity: str = Field(min_length=1)
    vehicle_type: VehicleType
    pickup_date: str
    delivery_date: str
    rate: float = Field(gt=0)
    rate_type: RateType = RateType.FLAT_RATE
    bid_deadline: Optional[str] = None
    load_type: LoadType = LoadType.OTR
    return_date: Optional[str] = None
    return_location: Optional[str] = None
    notes: Optional[str] = None


class LoadStatusUpdateRequest(BaseModel):
    status: str


class ProofOfDeliveryRequest(BaseModel):
    files: List[ProofFile] = Field(default_factory=list)


class LoadRecord(BaseModel):
    """Persisted load record."""

    load_id: str
    shipper_id: str
    posted_by: Optional[str] = None
    origin: LoadLocation
    destination: LoadLocation
    weight: float
    commodity: str
    vehicle_type: VehicleType
    pickup_date: str
    delivery_date: str
    rate: float
    rate_type: RateType = RateType.FLAT_RATE
    bid_deadline: Optional[str] = None
    load_type: LoadType = LoadType.OTR
    return_date: Optional[str] = None
    return_location: Optional[str] = None
    notes: Optional[str] = None
    status: LoadStatus = LoadStatus.POSTED
    assigned_to: Optional[str] = None
    accepted_bid: Optional[str] = None
    shipment_number: Optional[str] = None
    po_number: Optional[str] = None
    bol_number: Optional[str] = None
    proof_of_delivery: List[ProofFile] = Field(default_factory=list)
    delivery_approval: bool = False
    delivery_approved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ==================== BIDS ====================

class BidPlaceRequest(BaseModel):
    """Carrier rate offer against a load."""

    load_id: str
    rate: float = Field(gt=0)
    message: str = ""
    estimated_pickup_date: Optional[str] = None
    estimated_delivery_date: Optional[str] = None


class InhouseBidRequest(BidPlaceRequest):
    """Bid placed by an employee on a trucker's behalf."""

    carrier_id: str


class BidUpdateRequest(BaseModel):
    rate: Optional[float] = Field(default=None, gt=0)
    message: Optional[str] = None
    estimated_pickup_date: Optional[str] = None
    estimated_delivery_date: Optional[str] = None


class IntermediateApprovalRequest(BaseModel):
    intermediate_rate: float = Field(gt=0)


class BidDecisionRequest(BaseModel):
    """Accept or reject a bid, optionally stamping shipment references."""

    status: BidDecision
    reason: Optional[str] = None
    shipment_number: Optional[str] = None
    po_number: Optional[str] = None
    bol_number: Optional[str] = None
    origin_address_line1: Optional[str] = None
    origin_address_line2: Optional[str] = None
    destination_address_line1: Optional[str] = None
    destination_address_line2: Optional[str] = None
    notify_shipper: bool = False


class OpsApprovalRequest(BaseModel):
    """Driver and vehicle assignment confirmed by operations."""

    driver_name: str = Field(min_length=1)
    driver_phone: str = Field(min_length=3)
    vehicle_number: str = Field(min_length=1)
    vehicle_type: Optional[str] = None
    do_document: Optional[str] = None


class BidRecord(BaseModel):
    """Persisted bid record."""

    bid_id: str
    load_id: str
    carrier_id: str
    placed_by: Optional[str] = None
    rate: float
    intermediate_rate: Optional[float] = None
    message: str = ""
    estimated_pickup_date: Optional[str] = None
    estimated_delivery_date: Optional[str] = None
    status: BidStatus = BidStatus.PENDING_APPROVAL
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    vehicle_number: Optional[str] = None
    vehicle_type: Optional[str] = None
    do_document: Optional[str] = None
    rejection_reason: Optional[str] = None
    intermediate_approved_by: Optional[str] = None
    intermediate_approved_by_name: Optional[str] = None
    intermediate_approved_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    ops_approved_by: Optional[str] = None
    ops_approved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ==================== TRACKING ====================

class CurrentLocation(BaseModel):
    lat: float
    lon: float
    updated_at: datetime = Field(default_factory=_utcnow)


class TrackingRecord(BaseModel):
    """Live-location record owned by an assigned load."""

    tracking_id: str
    load_id: str
    bid_id: Optional[str] = None
    origin_lat_lng: GeoPoint
    destination_lat_lng: GeoPoint
    current_location: Optional[CurrentLocation] = None
    status: TrackingStatus = TrackingStatus.PENDING
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    vehicle_number: str = ""
    shipment_number: str = ""
    origin_name: str = ""
    destination_name: str = ""
    shipper_name: str = ""
    trucker_name: str = ""
    driver_name: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)


class LocationUpdateRequest(BaseModel):
    """One GPS fix pushed by a driver device."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    timestamp: Optional[datetime] = None
    accuracy: Optional[float] = Field(default=None, ge=0)
    altitude: Optional[float] = None
    speed: Optional[float] = Field(default=None, ge=0)
    heading: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    device_id: Optional[str] = None
    device_model: Optional[str] = None
    app_version: Optional[str] = None
    battery_level: Optional[float] = None
    network_type: Optional[str] = None
    source: str = "gps"
    notes: Optional[str] = None


class BulkLocationRequest(BaseModel):
    locations: List[LocationUpdateRequest] = Field(default_factory=list)


class TrackingStatusRequest(BaseModel):
    status: str


class LocationHistoryRecord(BaseModel):
    """Immutable location point appended for a tracking record."""

    history_id: str
    tracking_id: str
    vehicle_number: str = ""
    shipment_number: str = ""
    latitude: float
    longitude: float
    timestamp: datetime = Field(default_factory=_utcnow)
    location_data: Dict[str, Any] = Field(default_factory=dict)
    device_info: Dict[str, Any] = Field(default_factory=dict)
    trip_progress: Dict[str, Any] = Field(default_factory=dict)
    location_quality: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None


class TimelineEvent(BaseModel):
    """Lifecycle event associated with a load."""

    event_id: str
    load_id: str
    event_type: str
    actor: str
    timestamp: datetime = Field(default_factory=_utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)
