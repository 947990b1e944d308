"""Unit tests for lifecycle persistence: sequences, transactions, and uniqueness guards."""
from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from loadboard.core.config import get_settings
from loadboard.core.errors import ConflictError, InternalError, InvalidStateError
from loadboard.models.accounts import AccountRecord, AccountStatus, AccountType, EmployeeRole
from loadboard.models.lifecycle import (
    BidDecision,
    BidDecisionRequest,
    BidPlaceRequest,
    BidRecord,
    BidStatus,
    GeoPoint,
    LoadCreateRequest,
    LoadLocation,
    LoadRecord,
    LoadStatus,
    LocationHistoryRecord,
    TrackingRecord,
    VehicleType,
)
from loadboard.services.accounts import AccountService
from loadboard.services.geocoding import NominatimGeocoder
from loadboard.services.lifecycle_engine import LifecycleEngine
from loadboard.services.lifecycle_state import LifecycleStateStore
from loadboard.services.notifications import NotificationService
from loadboard.services.tracking import TrackingService


def _store(tmp_path) -> LifecycleStateStore:
    return LifecycleStateStore(db_path=str(tmp_path / "lifecycle.db"))


def _load(store: LifecycleStateStore, shipper_id: str = "ACC-000001") -> LoadRecord:
    return LoadRecord(
        load_id=store.generate_id("load"),
        shipper_id=shipper_id,
        origin=LoadLocation(city="Dallas", state="TX", lat=32.7767, lon=-96.797),
        destination=LoadLocation(city="Houston", state="TX", lat=29.7604, lon=-95.3698),
        weight=18000,
        commodity="Lumber",
        vehicle_type=VehicleType.FLATBED,
        pickup_date="2026-11-02",
        delivery_date="2026-11-04",
        rate=1400,
    )


def _bid(store: LifecycleStateStore, load_id: str, carrier_id: str, rate: float = 900) -> BidRecord:
    return BidRecord(bid_id=store.generate_id("bid"), load_id=load_id, carrier_id=carrier_id, rate=rate)


def _tracking(store: LifecycleStateStore, load_id: str) -> TrackingRecord:
    return TrackingRecord(
        tracking_id=store.generate_id("tracking"),
        load_id=load_id,
        origin_lat_lng=GeoPoint(lat=32.7767, lon=-96.797),
        destination_lat_lng=GeoPoint(lat=29.7604, lon=-95.3698),
    )


def _account(store: LifecycleStateStore, account_type: AccountType, **extra) -> AccountRecord:
    account = AccountRecord(
        account_id=store.generate_id("account"),
        account_type=account_type,
        status=AccountStatus.APPROVED,
        name=f"{account_type.value} account",
        email=f"{account_type.value}-{uuid.uuid4().hex[:10]}@example.com",
        **extra,
    )
    store.insert_account(account)
    return account


def test_concurrent_sequence_generation_is_unique(tmp_path):
    store = _store(tmp_path)

    with ThreadPoolExecutor(max_workers=12) as pool:
        bid_ids = list(pool.map(lambda _: store.generate_id("bid"), range(200)))

    assert len(set(bid_ids)) == 200
    assert sorted(bid_ids)[0] == "BID-000001"
    assert sorted(bid_ids)[-1] == "BID-000200"


def test_transaction_rolls_back_every_enclosed_write(tmp_path):
    store = _store(tmp_path)
    load = _load(store)

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.insert_load(load)
            store.record_timeline_event(load.load_id, "load_posted", "ACC-000001", {})
            raise RuntimeError("abort")

    assert store.get_load(load.load_id) is None
    assert store.list_timeline(load.load_id) == []


def test_nested_transaction_commits_once_at_outer_exit(tmp_path):
    store = _store(tmp_path)
    load = _load(store)

    with store.transaction():
        with store.transaction():
            store.insert_load(load)
        assert store.in_transaction()
    assert not store.in_transaction()
    assert store.get_load(load.load_id)["status"] == LoadStatus.POSTED.value


def test_save_load_rejects_stale_version(tmp_path):
    store = _store(tmp_path)
    load = _load(store)
    store.insert_load(load)

    first = LoadRecord(**store.get_load(load.load_id))
    second = LoadRecord(**store.get_load(load.load_id))

    first.status = LoadStatus.BIDDING
    saved = store.save_load(first)
    assert saved["version"] == 2

    second.status = LoadStatus.CANCELLED
    with pytest.raises(ConflictError):
        store.save_load(second)
    assert second.version == 1
    assert store.get_load(load.load_id)["status"] == LoadStatus.BIDDING.value


def test_only_one_open_bid_per_carrier_and_load(tmp_path):
    store = _store(tmp_path)
    load = _load(store)
    store.insert_load(load)

    first = _bid(store, load.load_id, "ACC-000009")
    store.insert_bid(first)
    with pytest.raises(ConflictError, match="already placed a bid"):
        store.insert_bid(_bid(store, load.load_id, "ACC-000009", rate=850))

    first.status = BidStatus.REJECTED
    store.save_bid(first)
    store.insert_bid(_bid(store, load.load_id, "ACC-000009", rate=850))
    assert store.count_bids(load_id=load.load_id) == 2
    assert store.find_open_bid(load.load_id, "ACC-000009")["rate"] == 850


def test_reject_open_bids_skips_the_winner_and_closed_bids(tmp_path):
    store = _store(tmp_path)
    load = _load(store)
    store.insert_load(load)
    winner = _bid(store, load.load_id, "ACC-000011", rate=700)
    loser = _bid(store, load.load_id, "ACC-000012", rate=800)
    closed = _bid(store, load.load_id, "ACC-000013", rate=900)
    closed.status = BidStatus.REJECTED
    for bid in (winner, loser, closed):
        store.insert_bid(bid)

    rejected = store.reject_open_bids(load.load_id, "Another bid was accepted", exclude_bid_id=winner.bid_id)
    assert rejected == [loser.bid_id]
    assert store.get_bid(loser.bid_id)["rejection_reason"] == "Another bid was accepted"
    assert store.get_bid(winner.bid_id)["status"] == BidStatus.PENDING_APPROVAL.value
    assert store.get_bid(closed.bid_id)["rejection_reason"] is None


def test_tracking_insert_is_idempotent_per_load(tmp_path):
    store = _store(tmp_path)
    load = _load(store)
    store.insert_load(load)

    original, created = store.insert_tracking_if_absent(_tracking(store, load.load_id))
    assert created is True
    again, created_again = store.insert_tracking_if_absent(_tracking(store, load.load_id))
    assert created_again is False
    assert again["tracking_id"] == original["tracking_id"]
    assert store.count_tracking(load.load_id) == 1


def test_location_history_window_and_order(tmp_path):
    store = _store(tmp_path)
    tracking = _tracking(store, "LD-000001")
    for hour, latitude in ((9, 30.9), (10, 31.0), (11, 31.1), (12, 31.2)):
        store.append_location_history(
            LocationHistoryRecord(
                history_id=store.generate_id("history"),
                tracking_id=tracking.tracking_id,
                latitude=latitude,
                longitude=-96,
                timestamp=datetime(2026, 11, 2, hour, tzinfo=timezone.utc),
            )
        )

    newest_first = store.list_location_history(tracking.tracking_id)
    assert [point["latitude"] for point in newest_first] == [31.2, 31.1, 31.0, 30.9]

    window = store.list_location_history(
        tracking.tracking_id,
        start=datetime(2026, 11, 2, 10, tzinfo=timezone.utc),
        end=datetime(2026, 11, 2, 11, tzinfo=timezone.utc),
        ascending=True,
    )
    assert [point["latitude"] for point in window] == [31.0, 31.1]

    paged = store.list_location_history(tracking.tracking_id, limit=2, skip=1)
    assert [point["latitude"] for point in paged] == [31.1, 31.0]


def test_idempotency_round_trip(tmp_path):
    store = _store(tmp_path)
    assert store.get_idempotent("create-load:ACC-000001:key-1") is None
    store.set_idempotent("create-load:ACC-000001:key-1", {"load_id": "LD-000001"})
    assert store.get_idempotent("create-load:ACC-000001:key-1") == {"load_id": "LD-000001"}


def test_concurrent_accepts_assign_exactly_one_bid(tmp_path):
    store = _store(tmp_path)
    accounts = AccountService(store)
    engine = LifecycleEngine(
        store,
        accounts,
        TrackingService(store, NominatimGeocoder()),
        NotificationService(store),
    )
    shipper = _account(store, AccountType.SHIPPER)
    cmt = _account(store, AccountType.EMPLOYEE, department="CMT", role=EmployeeRole.EMPLOYEE)
    truckers = [_account(store, AccountType.TRUCKER) for _ in range(4)]

    load = _load(store, shipper_id=shipper.account_id)
    store.insert_load(load)
    bid_ids = []
    for index, trucker in enumerate(truckers):
        bid = engine.place_bid(trucker, BidPlaceRequest(load_id=load.load_id, rate=900 + index * 10))
        engine.approve_intermediate(cmt, bid["bid_id"], auto=True)
        bid_ids.append(bid["bid_id"])

    def _accept(bid_id: str):
        try:
            return engine.decide_bid_after_markup(
                shipper,
                bid_id,
                BidDecisionRequest(status=BidDecision.ACCEPTED),
            )
        except InvalidStateError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(_accept, bid_ids))

    winners = [outcome for outcome in outcomes if isinstance(outcome, dict)]
    assert len(winners) == 1
    assert all(isinstance(outcome, InvalidStateError) for outcome in outcomes if not isinstance(outcome, dict))

    statuses = [store.get_bid(bid_id)["status"] for bid_id in bid_ids]
    assert statuses.count(BidStatus.ACCEPTED.value) == 1
    assert statuses.count(BidStatus.REJECTED.value) == 3

    final = store.get_load(load.load_id)
    assert final["status"] == LoadStatus.ASSIGNED.value
    assert final["accepted_bid"] == winners[0]["bid"]["bid_id"]
    assert store.count_tracking(load.load_id) == 1


def test_transaction_turns_sqlite_failures_into_internal_errors(tmp_path):
    store = _store(tmp_path)
    load = _load(store)

    with pytest.raises(InternalError) as excinfo:
        with store.transaction():
            store.insert_load(load)
            store.insert_load(load)

    assert excinfo.value.status_code == 500
    assert not store.in_transaction()
    assert store.get_load(load.load_id) is None


def test_run_idempotent_produces_once_for_concurrent_callers(tmp_path):
    store = _store(tmp_path)
    calls = []
    start = threading.Barrier(6)

    def _produce():
        calls.append(1)
        time.sleep(0.05)
        return {"load_id": f"LD-{len(calls):06d}"}

    def _request(_):
        start.wait()
        return store.run_idempotent("ACC-000001:load_create", "retry-1", _produce)

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(_request, range(6)))

    assert len(calls) == 1
    assert {response["load_id"] for response, _ in outcomes} == {"LD-000001"}
    assert sorted(replayed for _, replayed in outcomes) == [False, True, True, True, True, True]

    fresh, replayed = store.run_idempotent("ACC-000001:load_create", None, _produce)
    assert replayed is False
    assert fresh == {"load_id": "LD-000002"}


class SlowTransport:
    def __init__(self, delay: float):
        self.delay = delay
        self.sent = []

    def deliver(self, to, subject, html):
        time.sleep(self.delay)
        self.sent.append(to)


def test_create_load_does_not_wait_for_trucker_fanout(tmp_path):
    store = _store(tmp_path)
    transport = SlowTransport(delay=0.4)
    notifier = NotificationService(store, transport)
    notifier.settings = get_settings().model_copy(update={"email_enabled": True})
    engine = LifecycleEngine(store, AccountService(store), TrackingService(store, NominatimGeocoder()), notifier)
    shipper = _account(store, AccountType.SHIPPER)
    truckers = [_account(store, AccountType.TRUCKER) for _ in range(3)]

    request = LoadCreateRequest(
        origin=LoadLocation(city="Dallas", state="TX"),
        destination=LoadLocation(city="Houston", state="TX"),
        weight=18000,
        commodity="Lumber",
        vehicle_type=VehicleType.FLATBED,
        pickup_date="2026-11-02",
        delivery_date="2026-11-04",
        rate=1400,
    )
    started = time.monotonic()
    load = engine.create_load(shipper, request)
    assert time.monotonic() - started < 0.4
    assert transport.sent == []

    assert engine.announce_load(load["load_id"]) == 3
    assert sorted(transport.sent) == sorted(trucker.email for trucker in truckers)
