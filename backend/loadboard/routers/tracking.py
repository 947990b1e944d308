"""API routes for live tracking and location history."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from loadboard.core.auth import get_actor
from loadboard.models.accounts import AccountRecord
from loadboard.models.lifecycle import BulkLocationRequest, LocationUpdateRequest, TrackingStatusRequest
from loadboard.services.tracking import tracking_service

router = APIRouter(prefix="/tracking", tags=["tracking"])


@router.get("/shipment/{shipment_number}")
def tracking_by_shipment(shipment_number: str, actor: AccountRecord = Depends(get_actor)):
    return {"success": True, "tracking": tracking_service.get_tracking_by_shipment(actor, shipment_number)}


@router.post("/{reference}/location")
def update_location(
    reference: str,
    request: LocationUpdateRequest,
    actor: AccountRecord = Depends(get_actor),
):
    result = tracking_service.update_location(actor, reference, request)
    return {"success": True, "message": "Location updated", **result}


@router.put("/{load_id}/status")
def update_tracking_status(
    load_id: str,
    request: TrackingStatusRequest,
    actor: AccountRecord = Depends(get_actor),
):
    tracking = tracking_service.update_status(actor, load_id, request.status)
    return {"success": True, "message": f"Tracking status updated to {tracking['status']}", "tracking": tracking}


@router.post("/{tracking_id}/bulk-location")
def bulk_location_update(
    tracking_id: str,
    request: BulkLocationRequest,
    actor: AccountRecord = Depends(get_actor),
):
    result = tracking_service.bulk_location_update(actor, tracking_id, request.locations)
    return {"success": True, "message": "Locations recorded", **result}


@router.get("/{tracking_id}/history")
def location_history(
    tracking_id: str,
    start: Optional[str] = Query(default=None),
    end: Optional[str] = Query(default=None),
    limit: int = Query(default=1000, ge=1, le=5000),
    skip: int = Query(default=0, ge=0),
    actor: AccountRecord = Depends(get_actor),
):
    history = tracking_service.location_history(actor, tracking_id, start=start, end=end, limit=limit, skip=skip)
    return {"success": True, "tracking_id": tracking_id, "history": history, "count": len(history)}


@router.get("/{tracking_id}/stats")
def location_stats(tracking_id: str, actor: AccountRecord = Depends(get_actor)):
    return {"success": True, "tracking_id": tracking_id, "stats": tracking_service.location_stats(actor, tracking_id)}


@router.get("/{load_id}")
def get_tracking(load_id: str, actor: AccountRecord = Depends(get_actor)):
    return {"success": True, "tracking": tracking_service.get_tracking(actor, load_id)}
