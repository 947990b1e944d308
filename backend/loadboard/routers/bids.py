"""API routes for carrier bids and the internal markup/approval pipeline."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from loadboard.core.auth import get_actor
from loadboard.models.accounts import AccountRecord
from loadboard.models.lifecycle import (
    BidDecisionRequest,
    BidPlaceRequest,
    BidStatus,
    BidUpdateRequest,
    InhouseBidRequest,
    IntermediateApprovalRequest,
    OpsApprovalRequest,
)
from loadboard.services.lifecycle_engine import lifecycle_engine
from loadboard.services.lifecycle_state import lifecycle_state_store

router = APIRouter(prefix="/bid", tags=["bids"])


def _decision_message(result: dict) -> str:
    return f"Bid {result['bid']['status'].lower()} successfully"


@router.post("/place", status_code=201)
def place_bid(
    request: BidPlaceRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    actor: AccountRecord = Depends(get_actor),
):
    def _place() -> dict:
        bid = lifecycle_engine.place_bid(actor, request)
        return {"success": True, "message": "Bid placed successfully", "bid": bid}

    response, _ = lifecycle_state_store.run_idempotent(f"{actor.account_id}:bid_place", idempotency_key, _place)
    return response


@router.post("/place-by-inhouse", status_code=201)
def place_bid_by_inhouse(request: InhouseBidRequest, actor: AccountRecord = Depends(get_actor)):
    bid = lifecycle_engine.place_bid_by_inhouse(actor, request)
    return {"success": True, "message": "Bid placed on behalf of trucker", "bid": bid}


@router.get("/load/{load_id}")
def bids_for_load(load_id: str, actor: AccountRecord = Depends(get_actor)):
    bids = lifecycle_engine.bids_for_load(actor, load_id)
    return {"success": True, "bids": bids, "count": len(bids)}


@router.get("/trucker")
def bids_for_trucker(
    status: Optional[BidStatus] = Query(default=None),
    actor: AccountRecord = Depends(get_actor),
):
    bids = lifecycle_engine.bids_for_trucker(actor, status=status)
    return {"success": True, "bids": bids, "count": len(bids)}


@router.get("/pending-approval")
def pending_approval_queue(actor: AccountRecord = Depends(get_actor)):
    bids = lifecycle_engine.pending_approval_queue(actor)
    return {"success": True, "bids": bids, "count": len(bids)}


@router.get("/stats")
def bid_stats(actor: AccountRecord = Depends(get_actor)):
    return {"success": True, **lifecycle_engine.bid_stats(actor)}


@router.put("/{bid_id}")
def update_bid(bid_id: str, request: BidUpdateRequest, actor: AccountRecord = Depends(get_actor)):
    bid = lifecycle_engine.update_bid(actor, bid_id, request)
    return {"success": True, "message": "Bid updated successfully", "bid": bid}


@router.put("/{bid_id}/intermediate")
def approve_intermediate(
    bid_id: str,
    request: IntermediateApprovalRequest,
    actor: AccountRecord = Depends(get_actor),
):
    bid = lifecycle_engine.approve_intermediate(actor, bid_id, intermediate_rate=request.intermediate_rate)
    return {"success": True, "message": "Intermediate rate approved", "bid": bid}


@router.put("/{bid_id}/intermediate/auto")
def approve_intermediate_auto(bid_id: str, actor: AccountRecord = Depends(get_actor)):
    bid = lifecycle_engine.approve_intermediate(actor, bid_id, auto=True)
    return {"success": True, "message": "Intermediate rate approved with automatic markup", "bid": bid}


@router.put("/{bid_id}/status")
def update_bid_status(bid_id: str, request: BidDecisionRequest, actor: AccountRecord = Depends(get_actor)):
    result = lifecycle_engine.decide_bid_after_markup(actor, bid_id, request, channel="shipper")
    return {"success": True, "message": _decision_message(result), **result}


@router.put("/{bid_id}/sales-approval")
def approve_bid_by_sales(bid_id: str, request: BidDecisionRequest, actor: AccountRecord = Depends(get_actor)):
    result = lifecycle_engine.decide_bid_after_markup(actor, bid_id, request, channel="sales")
    return {"success": True, "message": _decision_message(result), **result}


@router.put("/{bid_id}/inhouse-accept")
def accept_bid_by_inhouse(bid_id: str, request: BidDecisionRequest, actor: AccountRecord = Depends(get_actor)):
    result = lifecycle_engine.decide_bid_direct(actor, bid_id, request)
    return {"success": True, "message": _decision_message(result), **result}


@router.put("/{bid_id}/ops-approval")
def approve_bid_by_ops(bid_id: str, request: OpsApprovalRequest, actor: AccountRecord = Depends(get_actor)):
    result = lifecycle_engine.approve_bid_by_ops(actor, bid_id, request)
    return {"success": True, "message": "Driver and vehicle assigned", **result}


@router.delete("/{bid_id}")
def withdraw_bid(bid_id: str, actor: AccountRecord = Depends(get_actor)):
    result = lifecycle_engine.withdraw_bid(actor, bid_id)
    return {"success": True, "message": "Bid withdrawn successfully", **result}
