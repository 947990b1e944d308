"""Capability checks shared by every lifecycle entry point."""
from __future__ import annotations

from typing import List

from loadboard.models.accounts import AccountRecord, AccountStatus, AccountType, EmployeeRole
from loadboard.models.lifecycle import BidRecord, LoadRecord, LoadStatus


ADMIN_ROLES = {EmployeeRole.ADMIN, EmployeeRole.SUPERADMIN}


def _approved(actor: AccountRecord) -> bool:
    return actor.status == AccountStatus.APPROVED


def is_shipper(actor: AccountRecord) -> bool:
    return actor.account_type == AccountType.SHIPPER and _approved(actor)


def is_trucker(actor: AccountRecord) -> bool:
    return actor.account_type == AccountType.TRUCKER and _approved(actor)


def is_employee(actor: AccountRecord) -> bool:
    return actor.account_type == AccountType.EMPLOYEE and _approved(actor)


def is_admin(actor: AccountRecord) -> bool:
    return is_employee(actor) and actor.role in ADMIN_ROLES


def in_department(actor: AccountRecord, *departments: str) -> bool:
    if not is_employee(actor):
        return False
    department = (actor.department or "").strip().lower()
    return department in {name.lower() for name in departments}


def can_manage_accounts(actor: AccountRecord) -> bool:
    return is_admin(actor)


def can_create_load(actor: AccountRecord) -> bool:
    return is_shipper(actor) or in_department(actor, "sales") or is_admin(actor)


def can_manage_load(actor: AccountRecord, load: LoadRecord) -> bool:
    return is_shipper(actor) and load.shipper_id == actor.account_id


def can_place_bid(actor: AccountRecord) -> bool:
    return is_trucker(actor)


def can_place_bid_for_trucker(actor: AccountRecord) -> bool:
    return in_department(actor, "cmt", "sales") or is_admin(actor)


def can_edit_bid(actor: AccountRecord, bid: BidRecord) -> bool:
    return is_trucker(actor) and bid.carrier_id == actor.account_id


def can_approve_intermediate(actor: AccountRecord) -> bool:
    return in_department(actor, "cmt") or is_admin(actor)


def can_decide_bid(actor: AccountRecord, load: LoadRecord) -> bool:
    if can_manage_load(actor, load):
        return True
    return in_department(actor, "sales") or is_admin(actor)


def can_decide_bid_direct(actor: AccountRecord) -> bool:
    return in_department(actor, "sales") or is_admin(actor)


def can_decide_bid_as_sales(actor: AccountRecord) -> bool:
    return in_department(actor, "sales") or is_admin(actor)


def can_assign_driver(actor: AccountRecord, bid: BidRecord) -> bool:
    if in_department(actor, "cmt") or is_admin(actor):
        return True
    return is_trucker(actor) and bid.carrier_id == actor.account_id


def can_drive_load(actor: AccountRecord, load: LoadRecord) -> bool:
    return is_trucker(actor) and bool(load.assigned_to) and load.assigned_to == actor.account_id


def can_push_location(actor: AccountRecord, load: LoadRecord) -> bool:
    return can_drive_load(actor, load) or is_employee(actor)


def can_view_bids(actor: AccountRecord, load: LoadRecord) -> bool:
    return is_employee(actor) or (actor.account_type == AccountType.SHIPPER and load.shipper_id == actor.account_id)


def can_view_load(actor: AccountRecord, load: LoadRecord) -> bool:
    if is_employee(actor) or load.shipper_id == actor.account_id:
        return True
    if load.assigned_to and load.assigned_to == actor.account_id:
        return True
    return is_trucker(actor) and load.status in {LoadStatus.POSTED, LoadStatus.BIDDING}


def actions_for(actor: AccountRecord, load: LoadRecord) -> List[str]:
    """Lifecycle actions the actor can take on the load right now."""
    actions: List[str] = []
    status = load.status
    open_for_bids = status in {LoadStatus.POSTED, LoadStatus.BIDDING}

    if can_manage_load(actor, load):
        if open_for_bids:
            actions.append("cancel")
        if status == LoadStatus.POD_UPLOADED and load.proof_of_delivery:
            actions.append("approve_delivery")
    if open_for_bids:
        if can_place_bid(actor):
            actions.append("place_bid")
        elif can_place_bid_for_trucker(actor):
            actions.append("place_bid_for_trucker")
        if can_view_bids(actor, load):
            actions.append("view_bids")
        if can_approve_intermediate(actor):
            actions.append("approve_intermediate")
        if can_decide_bid(actor, load):
            actions.append("decide_bid")
    if can_drive_load(actor, load):
        if status == LoadStatus.ASSIGNED:
            actions.append("start_transit")
        if status in {LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT, LoadStatus.POD_UPLOADED}:
            actions.append("upload_pod")
        if status == LoadStatus.POD_UPLOADED and load.proof_of_delivery:
            actions.append("mark_delivered")
    if status in {LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT} and can_push_location(actor, load):
        actions.append("push_location")
    return actions
