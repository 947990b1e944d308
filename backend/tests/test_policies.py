"""Capability checks for shippers, truckers, and in-house departments."""
from __future__ import annotations

from loadboard.models.accounts import AccountRecord, AccountStatus, AccountType, EmployeeRole
from loadboard.models.lifecycle import BidRecord, LoadLocation, LoadRecord, LoadStatus, ProofFile, VehicleType
from loadboard.services import policies


def _account(account_id: str, account_type: AccountType, status: AccountStatus = AccountStatus.APPROVED, **extra):
    return AccountRecord(
        account_id=account_id,
        account_type=account_type,
        status=status,
        name=account_id,
        email=f"{account_id.lower()}@example.com",
        **extra,
    )


SHIPPER = _account("ACC-000101", AccountType.SHIPPER)
OTHER_SHIPPER = _account("ACC-000102", AccountType.SHIPPER)
TRUCKER = _account("ACC-000201", AccountType.TRUCKER)
PENDING_TRUCKER = _account("ACC-000202", AccountType.TRUCKER, status=AccountStatus.PENDING)
CMT = _account("ACC-000301", AccountType.EMPLOYEE, department="CMT", role=EmployeeRole.EMPLOYEE)
SALES = _account("ACC-000302", AccountType.EMPLOYEE, department="sales", role=EmployeeRole.EMPLOYEE)
ACCOUNTING = _account("ACC-000303", AccountType.EMPLOYEE, department="Accounting", role=EmployeeRole.EMPLOYEE)
ADMIN = _account("ACC-000304", AccountType.EMPLOYEE, department="Management", role=EmployeeRole.ADMIN)


def _load(status: LoadStatus = LoadStatus.POSTED, assigned_to=None, pod: bool = False) -> LoadRecord:
    return LoadRecord(
        load_id="LD-000001",
        shipper_id=SHIPPER.account_id,
        origin=LoadLocation(city="Dallas", state="TX"),
        destination=LoadLocation(city="Houston", state="TX"),
        weight=10000,
        commodity="Paper",
        vehicle_type=VehicleType.BOX_TRUCK,
        pickup_date="2026-11-02",
        delivery_date="2026-11-03",
        rate=900,
        status=status,
        assigned_to=assigned_to,
        proof_of_delivery=[ProofFile(file_name="pod.pdf", file_url="https://files.example.com/pod.pdf")] if pod else [],
    )


def test_department_matching_ignores_case():
    assert policies.in_department(SALES, "Sales")
    assert policies.in_department(CMT, "cmt")
    assert not policies.in_department(ACCOUNTING, "cmt", "sales")
    assert not policies.in_department(TRUCKER, "cmt")


def test_pending_accounts_have_no_capabilities():
    assert not policies.can_place_bid(PENDING_TRUCKER)
    assert policies.can_place_bid(TRUCKER)
    assert not policies.can_place_bid(SHIPPER)


def test_load_posting_and_management():
    load = _load()
    assert policies.can_create_load(SHIPPER)
    assert policies.can_create_load(SALES)
    assert policies.can_create_load(ADMIN)
    assert not policies.can_create_load(CMT)
    assert not policies.can_create_load(TRUCKER)

    assert policies.can_manage_load(SHIPPER, load)
    assert not policies.can_manage_load(OTHER_SHIPPER, load)
    assert not policies.can_manage_load(ADMIN, load)


def test_bid_pipeline_capabilities():
    load = _load(LoadStatus.BIDDING)
    bid = BidRecord(bid_id="BID-000001", load_id=load.load_id, carrier_id=TRUCKER.account_id, rate=700)

    assert policies.can_approve_intermediate(CMT)
    assert not policies.can_approve_intermediate(SALES)
    assert policies.can_decide_bid(SHIPPER, load)
    assert policies.can_decide_bid(SALES, load)
    assert not policies.can_decide_bid(OTHER_SHIPPER, load)
    assert not policies.can_decide_bid(CMT, load)
    assert policies.can_decide_bid_direct(SALES)
    assert not policies.can_decide_bid_direct(SHIPPER)
    assert policies.can_decide_bid_as_sales(SALES)
    assert policies.can_decide_bid_as_sales(ADMIN)
    assert not policies.can_decide_bid_as_sales(SHIPPER)
    assert not policies.can_decide_bid_as_sales(CMT)

    assert policies.can_edit_bid(TRUCKER, bid)
    assert not policies.can_edit_bid(CMT, bid)
    assert policies.can_assign_driver(CMT, bid)
    assert policies.can_assign_driver(TRUCKER, bid)
    assert not policies.can_assign_driver(SALES, bid)


def test_view_rules_follow_ownership():
    open_load = _load()
    assigned = _load(LoadStatus.ASSIGNED, assigned_to=TRUCKER.account_id)

    assert policies.can_view_bids(SHIPPER, open_load)
    assert not policies.can_view_bids(OTHER_SHIPPER, open_load)
    assert not policies.can_view_bids(TRUCKER, open_load)

    assert policies.can_view_load(TRUCKER, open_load)
    assert policies.can_view_load(TRUCKER, assigned)
    assert not policies.can_view_load(_account("ACC-000203", AccountType.TRUCKER), assigned)
    assert policies.can_view_load(ACCOUNTING, assigned)


def test_actions_track_load_status():
    assert policies.actions_for(SHIPPER, _load()) == ["cancel", "view_bids", "decide_bid"]
    assert policies.actions_for(CMT, _load()) == ["place_bid_for_trucker", "view_bids", "approve_intermediate"]

    assigned = _load(LoadStatus.ASSIGNED, assigned_to=TRUCKER.account_id)
    assert policies.actions_for(TRUCKER, assigned) == ["start_transit", "upload_pod", "push_location"]
    assert policies.actions_for(SHIPPER, assigned) == []

    uploaded = _load(LoadStatus.POD_UPLOADED, assigned_to=TRUCKER.account_id, pod=True)
    assert policies.actions_for(SHIPPER, uploaded) == ["approve_delivery"]
    assert policies.actions_for(TRUCKER, uploaded) == ["upload_pod", "mark_delivered"]

    assert policies.actions_for(TRUCKER, _load(LoadStatus.CANCELLED)) == []
