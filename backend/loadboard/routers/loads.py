"""API routes for posting loads and driving them to delivery."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query

from loadboard.core.auth import get_actor
from loadboard.models.accounts import AccountRecord
from loadboard.models.lifecycle import (
    LoadCreateRequest,
    LoadStatus,
    LoadStatusUpdateRequest,
    ProofOfDeliveryRequest,
    VehicleType,
)
from loadboard.services.lifecycle_engine import lifecycle_engine
from loadboard.services.lifecycle_state import lifecycle_state_store

router = APIRouter(prefix="/load", tags=["loads"])


@router.post("/create", status_code=201)
def create_load(
    request: LoadCreateRequest,
    background_tasks: BackgroundTasks,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    actor: AccountRecord = Depends(get_actor),
):
    def _create() -> dict:
        load = lifecycle_engine.create_load(actor, request)
        return {"success": True, "message": "Load created successfully", "load": load}

    response, replayed = lifecycle_state_store.run_idempotent(
        f"{actor.account_id}:load_create", idempotency_key, _create
    )
    if not replayed:
        # Truckers hear about the load after the shipper gets the response
        background_tasks.add_task(lifecycle_engine.announce_load, response["load"]["load_id"])
    return response


@router.get("/available")
def load_board(
    origin_city: Optional[str] = Query(default=None),
    destination_city: Optional[str] = Query(default=None),
    vehicle_type: Optional[VehicleType] = Query(default=None),
    min_weight: Optional[float] = Query(default=None, ge=0),
    max_weight: Optional[float] = Query(default=None, ge=0),
    min_rate: Optional[float] = Query(default=None, ge=0),
    max_rate: Optional[float] = Query(default=None, ge=0),
    sort_by: str = Query(default="created_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: AccountRecord = Depends(get_actor),
):
    board = lifecycle_engine.load_board(
        actor,
        origin_city=origin_city,
        destination_city=destination_city,
        vehicle_type=vehicle_type,
        min_weight=min_weight,
        max_weight=max_weight,
        min_rate=min_rate,
        max_rate=max_rate,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return {"success": True, **board}


@router.get("/shipper")
def shipper_loads(
    shipper_id: Optional[str] = Query(default=None),
    status: Optional[LoadStatus] = Query(default=None),
    actor: AccountRecord = Depends(get_actor),
):
    loads = lifecycle_engine.loads_for_shipper(actor, shipper_id=shipper_id, status=status)
    return {"success": True, "loads": loads, "count": len(loads)}


@router.get("/trucker")
def trucker_loads(
    status: Optional[LoadStatus] = Query(default=None),
    actor: AccountRecord = Depends(get_actor),
):
    loads = lifecycle_engine.loads_for_trucker(actor, status=status)
    return {"success": True, "loads": loads, "count": len(loads)}


@router.get("/stats")
def load_stats(actor: AccountRecord = Depends(get_actor)):
    return {"success": True, "stats": lifecycle_engine.load_stats(actor)}


@router.get("/{load_id}")
def get_load(load_id: str, actor: AccountRecord = Depends(get_actor)):
    return {"success": True, "load": lifecycle_engine.get_load(actor, load_id)}


@router.get("/{load_id}/timeline")
def get_load_timeline(load_id: str, actor: AccountRecord = Depends(get_actor)):
    return {"success": True, "load_id": load_id, "events": lifecycle_engine.load_timeline(actor, load_id)}


@router.put("/{load_id}/status")
def update_load_status(
    load_id: str,
    request: LoadStatusUpdateRequest,
    actor: AccountRecord = Depends(get_actor),
):
    load = lifecycle_engine.update_load_status(actor, load_id, request.status)
    return {"success": True, "message": f"Load status updated to {load['status']}", "load": load}


@router.post("/{load_id}/proof")
def upload_proof_of_delivery(
    load_id: str,
    request: ProofOfDeliveryRequest,
    actor: AccountRecord = Depends(get_actor),
):
    load = lifecycle_engine.upload_proof_of_delivery(actor, load_id, request.files)
    return {"success": True, "message": "Proof of delivery uploaded", "load": load}


@router.put("/{load_id}/approve-delivery")
def approve_delivery(load_id: str, actor: AccountRecord = Depends(get_actor)):
    load = lifecycle_engine.approve_delivery(actor, load_id)
    return {"success": True, "message": "Delivery approved", "load": load}


@router.delete("/{load_id}")
def cancel_load(load_id: str, actor: AccountRecord = Depends(get_actor)):
    load = lifecycle_engine.cancel_load(actor, load_id)
    return {"success": True, "message": "Load cancelled", "load": load}
