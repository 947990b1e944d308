"""Tracking lifecycle: lazy creation, live location, history, and trip stats."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from loadboard.core.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from loadboard.core.logging import logger
from loadboard.models.accounts import AccountRecord
from loadboard.models.lifecycle import (
    BidRecord,
    CurrentLocation,
    GeoPoint,
    LoadRecord,
    LocationHistoryRecord,
    LocationUpdateRequest,
    TrackingRecord,
    TrackingStatus,
)
from loadboard.services import policies
from loadboard.services.geocoding import NominatimGeocoder
from loadboard.services.lifecycle_state import LifecycleStateStore, parse_iso_utc, lifecycle_state_store


EARTH_RADIUS_KM = 6371.0

ALLOWED_TRACKING_TRANSITIONS = {
    TrackingStatus.PENDING: {TrackingStatus.IN_TRANSIT, TrackingStatus.DELIVERED},
    TrackingStatus.IN_TRANSIT: {TrackingStatus.DELIVERED},
    TrackingStatus.DELIVERED: set(),
}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def location_quality(accuracy: Optional[float], source: str) -> Dict[str, Any]:
    quality: Dict[str, Any] = {"is_accurate": True, "confidence": 1.0, "source": source or "gps"}
    if accuracy:
        quality["is_accurate"] = accuracy <= 10
        quality["confidence"] = round(max(0.0, 1 - accuracy / 100), 2)
    return quality


def parse_tracking_status(value: str) -> TrackingStatus:
    try:
        return TrackingStatus((value or "").strip().lower())
    except ValueError:
        allowed = ", ".join(status.value for status in TrackingStatus)
        raise ValidationError(f"Invalid tracking status '{value}'. Expected one of: {allowed}")


class TrackingService:
    """Owns Tracking records and their location history."""

    def __init__(
        self,
        store: Optional[LifecycleStateStore] = None,
        geocoder: Optional[NominatimGeocoder] = None,
    ) -> None:
        self.store = store or lifecycle_state_store
        self.geocoder = geocoder or NominatimGeocoder()

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    def resolve_endpoints(self, load: LoadRecord) -> Optional[Tuple[GeoPoint, GeoPoint]]:
        """Geocode both ends of a load; None when either side cannot be resolved."""
        origin = self.geocoder.resolve_location(load.origin)
        destination = self.geocoder.resolve_location(load.destination)
        if origin is None or destination is None:
            logger.warning(
                "Tracking endpoints unresolved, tracking will not be created",
                load_id=load.load_id,
                origin=load.origin.label(),
                destination=load.destination.label(),
                origin_resolved=origin is not None,
                destination_resolved=destination is not None,
            )
            return None
        return origin, destination

    def ensure_tracking(
        self,
        load: LoadRecord,
        bid: BidRecord,
        endpoints: Optional[Tuple[GeoPoint, GeoPoint]],
        shipper_name: str = "",
        trucker_name: str = "",
    ) -> Optional[Dict[str, Any]]:
        """Create the load's Tracking record once; returns the existing one otherwise."""
        existing = self.store.get_tracking_for_load(load.load_id)
        if existing is not None:
            return existing
        if endpoints is None:
            return None

        origin, destination = endpoints
        record = TrackingRecord(
            tracking_id=self.store.generate_id("tracking"),
            load_id=load.load_id,
            bid_id=bid.bid_id,
            origin_lat_lng=origin,
            destination_lat_lng=destination,
            status=TrackingStatus.IN_TRANSIT,
            vehicle_number=bid.vehicle_number or "",
            shipment_number=load.shipment_number or "",
            origin_name=load.origin.label(),
            destination_name=load.destination.label(),
            shipper_name=shipper_name,
            trucker_name=trucker_name,
            driver_name=bid.driver_name or "",
        )
        row, created = self.store.insert_tracking_if_absent(record)
        if created:
            logger.info("Tracking created", load_id=load.load_id, tracking_id=record.tracking_id, bid_id=bid.bid_id)
        return row

    def sync_from_load(self, load_id: str, status: TrackingStatus) -> Optional[Dict[str, Any]]:
        """Advance a load's Tracking forward; never moves it backwards."""
        with self.store.transaction():
            row = self.store.get_tracking_for_load(load_id)
            if row is None:
                return None
            tracking = TrackingRecord(**row)
            if tracking.status == status or status not in ALLOWED_TRACKING_TRANSITIONS[tracking.status]:
                return row
            tracking.status = status
            if status == TrackingStatus.DELIVERED:
                tracking.ended_at = datetime.now(timezone.utc)
            return self.store.save_tracking(tracking)

    def apply_ops_assignment(self, load_id: str, bid: BidRecord) -> Optional[Dict[str, Any]]:
        with self.store.transaction():
            row = self.store.get_tracking_for_load(load_id)
            if row is None:
                return None
            tracking = TrackingRecord(**row)
            tracking.vehicle_number = bid.vehicle_number or tracking.vehicle_number
            tracking.driver_name = bid.driver_name or tracking.driver_name
            tracking.bid_id = tracking.bid_id or bid.bid_id
            return self.store.save_tracking(tracking)

    # ------------------------------------------------------------------ #
    # Lookups
    # ------------------------------------------------------------------ #

    def _resolve_reference(self, reference: str) -> TrackingRecord:
        ref = (reference or "").strip()
        row = (
            self.store.get_tracking_for_load(ref)
            or self.store.get_tracking_by_shipment(ref)
            or self.store.get_tracking(ref)
        )
        if row is None:
            raise NotFoundError(f"Tracking not found for {ref}")
        return TrackingRecord(**row)

    def _require_tracking(self, tracking_id: str) -> TrackingRecord:
        row = self.store.get_tracking(tracking_id)
        if row is None:
            raise NotFoundError(f"Tracking {tracking_id} not found")
        return TrackingRecord(**row)

    def _authorize_push(self, actor: AccountRecord, tracking: TrackingRecord) -> None:
        load_row = self.store.get_load(tracking.load_id)
        if load_row is None:
            raise NotFoundError(f"Load {tracking.load_id} not found")
        if not policies.can_push_location(actor, LoadRecord(**load_row)):
            raise ForbiddenError("Only the assigned trucker or staff can update tracking")

    def _authorize_view(self, actor: AccountRecord, tracking: TrackingRecord) -> None:
        load_row = self.store.get_load(tracking.load_id)
        if load_row is None:
            raise NotFoundError(f"Load {tracking.load_id} not found")
        if not policies.can_view_load(actor, LoadRecord(**load_row)):
            raise ForbiddenError("You are not allowed to view this shipment")

    def get_tracking(self, actor: AccountRecord, load_id: str) -> Dict[str, Any]:
        row = self.store.get_tracking_for_load(load_id)
        if row is None:
            raise NotFoundError(f"Tracking not found for load {load_id}")
        tracking = TrackingRecord(**row)
        self._authorize_view(actor, tracking)
        return row

    def get_tracking_by_shipment(self, actor: AccountRecord, shipment_number: str) -> Dict[str, Any]:
        row = self.store.get_tracking_by_shipment(shipment_number)
        if row is None:
            raise NotFoundError(f"Tracking not found for shipment {shipment_number}")
        self._authorize_view(actor, TrackingRecord(**row))
        return row

    # ------------------------------------------------------------------ #
    # Location updates
    # ------------------------------------------------------------------ #

    def _history_record(self, tracking: TrackingRecord, point: LocationUpdateRequest) -> LocationHistoryRecord:
        origin = tracking.origin_lat_lng
        destination = tracking.destination_lat_lng
        from_origin = haversine_km(origin.lat, origin.lon, point.latitude, point.longitude)
        to_destination = haversine_km(point.latitude, point.longitude, destination.lat, destination.lon)
        total = from_origin + to_destination
        return LocationHistoryRecord(
            history_id=self.store.generate_id("history"),
            tracking_id=tracking.tracking_id,
            vehicle_number=tracking.vehicle_number,
            shipment_number=tracking.shipment_number,
            latitude=point.latitude,
            longitude=point.longitude,
            timestamp=parse_iso_utc(point.timestamp) or datetime.now(timezone.utc),
            location_data={
                "accuracy": point.accuracy,
                "altitude": point.altitude,
                "speed": point.speed,
                "heading": point.heading,
                "address": point.address,
                "city": point.city,
                "state": point.state,
                "country": point.country,
            },
            device_info={
                "device_id": point.device_id,
                "device_model": point.device_model,
                "app_version": point.app_version,
                "battery_level": point.battery_level,
                "network_type": point.network_type,
            },
            location_quality=location_quality(point.accuracy, point.source),
            trip_progress={
                "distance_from_origin": round(from_origin, 2),
                "distance_to_destination": round(to_destination, 2),
                "progress_percentage": round(from_origin / total * 100) if total > 0 else 0,
            },
            notes=point.notes,
        )

    def _append_history(self, tracking: TrackingRecord, point: LocationUpdateRequest) -> Optional[Dict[str, Any]]:
        try:
            return self.store.append_location_history(self._history_record(tracking, point))
        except Exception as exc:
            logger.error(
                "Location history append failed",
                tracking_id=tracking.tracking_id,
                error=str(exc),
            )
            return None

    def _move_current_location(
        self,
        tracking_id: str,
        point: LocationUpdateRequest,
    ) -> Tuple[Dict[str, Any], TrackingRecord]:
        """Overwrite current_location only; status and ended_at stay as stored."""
        with self.store.transaction():
            tracking = self._require_tracking(tracking_id)
            tracking.current_location = CurrentLocation(
                lat=point.latitude,
                lon=point.longitude,
                updated_at=datetime.now(timezone.utc),
            )
            row = self.store.save_tracking(tracking)
        return row, tracking

    def update_location(
        self,
        actor: AccountRecord,
        reference: str,
        point: LocationUpdateRequest,
    ) -> Dict[str, Any]:
        """Overwrite the current location; history is appended best-effort."""
        tracking = self._resolve_reference(reference)
        self._authorize_push(actor, tracking)
        row, tracking = self._move_current_location(tracking.tracking_id, point)
        history = self._append_history(tracking, point)
        logger.info(
            "Tracking location updated",
            tracking_id=tracking.tracking_id,
            load_id=tracking.load_id,
            history_recorded=history is not None,
        )
        return {"tracking": row, "history": history}

    def bulk_location_update(
        self,
        actor: AccountRecord,
        tracking_id: str,
        points: List[LocationUpdateRequest],
    ) -> Dict[str, Any]:
        if not points:
            raise ValidationError("At least one location is required")
        tracking = self._require_tracking(tracking_id)
        self._authorize_push(actor, tracking)

        recorded = 0
        for point in points:
            if self._append_history(tracking, point) is not None:
                recorded += 1

        last = points[-1]
        last_stamp = parse_iso_utc(last.timestamp)
        stamps = [parse_iso_utc(point.timestamp) for point in points if point.timestamp is not None]
        if last_stamp is not None and stamps and max(stamps) > last_stamp:
            logger.warning(
                "Bulk location batch is out of order, last element is not the newest",
                tracking_id=tracking.tracking_id,
                last_timestamp=last_stamp.isoformat(),
                newest_timestamp=max(stamps).isoformat(),
            )

        row, tracking = self._move_current_location(tracking.tracking_id, last)
        logger.info("Bulk locations recorded", tracking_id=tracking.tracking_id, received=len(points), recorded=recorded)
        return {"tracking": row, "received": len(points), "recorded": recorded}

    def update_status(self, actor: AccountRecord, load_id: str, status: str) -> Dict[str, Any]:
        target = parse_tracking_status(status)
        row = self.store.get_tracking_for_load(load_id)
        if row is None:
            raise NotFoundError(f"Tracking not found for load {load_id}")
        self._authorize_push(actor, TrackingRecord(**row))
        with self.store.transaction():
            tracking = self._require_tracking(row["tracking_id"])
            if tracking.status == target:
                return tracking.model_dump(mode="json")
            if target not in ALLOWED_TRACKING_TRANSITIONS[tracking.status]:
                raise InvalidStateError(
                    f"Invalid tracking transition: {tracking.status.value} -> {target.value}"
                )
            tracking.status = target
            if target == TrackingStatus.DELIVERED:
                tracking.ended_at = datetime.now(timezone.utc)
            saved = self.store.save_tracking(tracking)
            self.store.record_timeline_event(
                load_id,
                "tracking_status_changed",
                actor.account_id,
                {"tracking_id": tracking.tracking_id, "status": target.value},
            )
        return saved

    # ------------------------------------------------------------------ #
    # History and stats
    # ------------------------------------------------------------------ #

    def location_history(
        self,
        actor: AccountRecord,
        tracking_id: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
        limit: int = 1000,
        skip: int = 0,
    ) -> List[Dict[str, Any]]:
        tracking = self._require_tracking(tracking_id)
        self._authorize_view(actor, tracking)
        lower = parse_iso_utc(start) if start else None
        upper = parse_iso_utc(end) if end else None
        if (start and lower is None) or (end and upper is None):
            raise ValidationError("start and end must be ISO-8601 timestamps")
        return self.store.list_location_history(tracking_id, start=lower, end=upper, limit=limit, skip=skip)

    def location_stats(self, actor: AccountRecord, tracking_id: str) -> Dict[str, Any]:
        tracking = self._require_tracking(tracking_id)
        self._authorize_view(actor, tracking)
        points = self.store.list_location_history(tracking_id, limit=5000, ascending=True)
        if not points:
            return {
                "total_points": 0,
                "total_distance_km": 0,
                "average_speed": 0,
                "duration_hours": 0,
                "start_time": None,
                "end_time": None,
            }

        total_distance = 0.0
        speed_total = 0.0
        speed_count = 0
        stamps = [parse_iso_utc(point["timestamp"]) for point in points]
        for index in range(1, len(points)):
            prev, curr = points[index - 1], points[index]
            total_distance += haversine_km(prev["latitude"], prev["longitude"], curr["latitude"], curr["longitude"])
            speed = (curr.get("location_data") or {}).get("speed")
            if stamps[index] and stamps[index - 1] and stamps[index] > stamps[index - 1] and speed:
                speed_total += float(speed)
                speed_count += 1

        duration = 0.0
        if stamps[0] and stamps[-1]:
            duration = (stamps[-1] - stamps[0]).total_seconds() / 3600
        return {
            "total_points": len(points),
            "total_distance_km": round(total_distance, 2),
            "average_speed": round(speed_total / speed_count) if speed_count else 0,
            "duration_hours": round(duration, 2),
            "start_time": points[0]["timestamp"],
            "end_time": points[-1]["timestamp"],
        }


tracking_service = TrackingService()
