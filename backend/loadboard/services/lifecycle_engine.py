"""Load and bid lifecycle engine: state machines, markup pipeline, and side effects."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from loadboard.core.config import get_settings
from loadboard.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from loadboard.core.logging import logger
from loadboard.models.accounts import AccountRecord
from loadboard.models.lifecycle import (
    BidDecision,
    BidDecisionRequest,
    BidPlaceRequest,
    BidRecord,
    BidStatus,
    BidUpdateRequest,
    GeoPoint,
    InhouseBidRequest,
    LoadCreateRequest,
    LoadRecord,
    LoadStatus,
    LoadType,
    OpsApprovalRequest,
    ProofFile,
    TrackingStatus,
    VehicleType,
)
from loadboard.services import policies
from loadboard.services.accounts import AccountService, account_service
from loadboard.services.lifecycle_state import (
    OPEN_BID_STATUSES,
    LifecycleStateStore,
    lifecycle_state_store,
)
from loadboard.services.notifications import NotificationService
from loadboard.services.tracking import TrackingService, tracking_service


SIBLING_REJECTION_REASON = "Another bid was accepted"
CANCELLATION_REJECTION_REASON = "Load was cancelled"

OPEN_LOAD_STATUSES = (LoadStatus.POSTED, LoadStatus.BIDDING)
POD_UPLOAD_STATUSES = (LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT, LoadStatus.POD_UPLOADED)

BOARD_SORT_FIELDS = {"created_at", "rate", "weight", "pickup_date", "delivery_date"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_markup(rate: float, multiplier: float) -> float:
    """Marked-up rate rounded half-up to a whole currency unit."""
    value = Decimal(str(rate)) * Decimal(str(multiplier))
    return float(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def rate_difference_percentage(original: Optional[float], intermediate: Optional[float]) -> float:
    if not original or intermediate is None:
        return 0.0
    change = (Decimal(str(intermediate)) - Decimal(str(original))) / Decimal(str(original)) * 100
    return float(change.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class LifecycleEngine:
    """Coordinates loads, bids, and tracking under one store transaction per operation."""

    ALLOWED_LOAD_TRANSITIONS = {
        LoadStatus.POSTED: {LoadStatus.BIDDING, LoadStatus.ASSIGNED, LoadStatus.CANCELLED},
        LoadStatus.BIDDING: {LoadStatus.POSTED, LoadStatus.ASSIGNED, LoadStatus.CANCELLED},
        LoadStatus.ASSIGNED: {LoadStatus.IN_TRANSIT, LoadStatus.POD_UPLOADED},
        LoadStatus.IN_TRANSIT: {LoadStatus.POD_UPLOADED},
        LoadStatus.POD_UPLOADED: {LoadStatus.POD_UPLOADED, LoadStatus.DELIVERED},
        LoadStatus.DELIVERED: set(),
        LoadStatus.CANCELLED: set(),
    }

    ALLOWED_BID_TRANSITIONS = {
        BidStatus.PENDING_APPROVAL: {BidStatus.PENDING, BidStatus.ACCEPTED, BidStatus.REJECTED},
        BidStatus.PENDING: {BidStatus.PENDING_APPROVAL, BidStatus.ACCEPTED, BidStatus.REJECTED},
        BidStatus.ACCEPTED: set(),
        BidStatus.REJECTED: set(),
    }

    def __init__(
        self,
        store: Optional[LifecycleStateStore] = None,
        accounts: Optional[AccountService] = None,
        tracking: Optional[TrackingService] = None,
        notifier: Optional[NotificationService] = None,
    ) -> None:
        self.settings = get_settings()
        self.store = store or lifecycle_state_store
        self.accounts = accounts or account_service
        self.tracking = tracking or tracking_service
        self.notifier = notifier or NotificationService(self.store)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @classmethod
    def _validate_load_transition(cls, current: LoadStatus, target: LoadStatus) -> None:
        allowed = cls.ALLOWED_LOAD_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidStateError(
                f"Invalid load status transition {current.value} -> {target.value}"
            )

    @classmethod
    def _validate_bid_transition(cls, current: BidStatus, target: BidStatus) -> None:
        allowed = cls.ALLOWED_BID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidStateError(
                f"Invalid bid status transition {current.value} -> {target.value}"
            )

    def _load(self, load_id: str) -> LoadRecord:
        row = self.store.get_load(load_id)
        if row is None:
            raise NotFoundError(f"Load {load_id} not found")
        return LoadRecord(**row)

    def _bid(self, bid_id: str) -> BidRecord:
        row = self.store.get_bid(bid_id)
        if row is None:
            raise NotFoundError(f"Bid {bid_id} not found")
        return BidRecord(**row)

    def _display_name(self, account_id: Optional[str]) -> str:
        if not account_id:
            return ""
        account = self.accounts.find(account_id)
        return account.display_name() if account else ""

    def _bid_view(self, row: Dict[str, Any]) -> Dict[str, Any]:
        view = dict(row)
        view["rate_difference_percentage"] = rate_difference_percentage(row.get("rate"), row.get("intermediate_rate"))
        return view

    def _timeline(self, load_id: str, event_type: str, actor: AccountRecord, details: Dict[str, Any]) -> None:
        self.store.record_timeline_event(load_id, event_type, actor.account_id, details)

    def _endpoints_for(self, load: LoadRecord) -> Optional[Tuple[GeoPoint, GeoPoint]]:
        if self.store.get_tracking_for_load(load.load_id) is not None:
            return None
        return self.tracking.resolve_endpoints(load)

    # ------------------------------------------------------------------ #
    # Loads
    # ------------------------------------------------------------------ #

    def create_load(self, actor: AccountRecord, request: LoadCreateRequest) -> Dict[str, Any]:
        if not policies.can_create_load(actor):
            raise ForbiddenError("Only approved shippers or sales staff can post loads")

        if policies.is_shipper(actor):
            if request.shipper_id and request.shipper_id != actor.account_id:
                raise ForbiddenError("Shippers can only post loads for themselves")
            shipper_id = actor.account_id
        else:
            if not request.shipper_id:
                raise ValidationError("shipper_id is required when staff post a load")
            shipper = self.accounts.require(request.shipper_id)
            if not policies.is_shipper(shipper):
                raise ValidationError(f"Account {shipper.account_id} is not an approved shipper")
            shipper_id = shipper.account_id

        if request.load_type == LoadType.DRAYAGE:
            if not (request.return_date or "").strip() or not (request.return_location or "").strip():
                raise ValidationError("DRAYAGE loads require return_date and return_location")

        record = LoadRecord(
            load_id=self.store.generate_id("load"),
            shipper_id=shipper_id,
            posted_by=actor.account_id,
            origin=request.origin,
            destination=request.destination,
            weight=request.weight,
            commodity=request.commodity.strip(),
            vehicle_type=request.vehicle_type,
            pickup_date=request.pickup_date,
            delivery_date=request.delivery_date,
            rate=request.rate,
            rate_type=request.rate_type,
            bid_deadline=request.bid_deadline,
            load_type=request.load_type,
            return_date=request.return_date if request.load_type == LoadType.DRAYAGE else None,
            return_location=request.return_location if request.load_type == LoadType.DRAYAGE else None,
            notes=request.notes,
            status=LoadStatus.POSTED,
        )
        with self.store.transaction():
            row = self.store.insert_load(record)
            self._timeline(record.load_id, "load_posted", actor, {"status": record.status.value})

        logger.info("Load posted", load_id=record.load_id, shipper_id=shipper_id, load_type=record.load_type.value)
        return row

    def announce_load(self, load_id: str) -> int:
        """Fan a posted load out to every approved trucker; runs after the response."""
        load = self._load(load_id)
        notified = self.notifier.new_load(self.accounts.approved_truckers(), load)
        logger.info("New load notifications dispatched", load_id=load_id, sent=notified)
        return notified

    def get_load(self, actor: AccountRecord, load_id: str) -> Dict[str, Any]:
        load = self._load(load_id)
        if not policies.can_view_load(actor, load):
            raise ForbiddenError("You are not allowed to view this load")
        row = load.model_dump(mode="json")
        row["actions"] = policies.actions_for(actor, load)
        row["bid_count"] = self.store.count_bids(load_id=load_id)
        return row

    def load_board(
        self,
        actor: AccountRecord,
        origin_city: Optional[str] = None,
        destination_city: Optional[str] = None,
        vehicle_type: Optional[VehicleType] = None,
        min_weight: Optional[float] = None,
        max_weight: Optional[float] = None,
        min_rate: Optional[float] = None,
        max_rate: Optional[float] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """Open loads that carriers can bid on, filtered and paginated."""
        if not (policies.is_trucker(actor) or policies.is_employee(actor)):
            raise ForbiddenError("Only approved truckers or staff can browse the load board")
        if sort_by not in BOARD_SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of: {sorted(BOARD_SORT_FIELDS)}")

        rows = self.store.list_loads(statuses=[status.value for status in OPEN_LOAD_STATUSES])

        def _matches(row: Dict[str, Any]) -> bool:
            if origin_city and origin_city.strip().lower() not in row["origin"]["city"].lower():
                return False
            if destination_city and destination_city.strip().lower() not in row["destination"]["city"].lower():
                return False
            if vehicle_type and row["vehicle_type"] != vehicle_type.value:
                return False
            if min_weight is not None and row["weight"] < min_weight:
                return False
            if max_weight is not None and row["weight"] > max_weight:
                return False
            if min_rate is not None and row["rate"] < min_rate:
                return False
            if max_rate is not None and row["rate"] > max_rate:
                return False
            return True

        matched = [row for row in rows if _matches(row)]
        matched.sort(key=lambda row: row.get(sort_by) or "", reverse=sort_order.lower() != "asc")

        page = max(1, int(page))
        limit = max(1, min(int(limit), 100))
        start = (page - 1) * limit
        total = len(matched)
        return {
            "loads": matched[start:start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def loads_for_shipper(
        self,
        actor: AccountRecord,
        shipper_id: Optional[str] = None,
        status: Optional[LoadStatus] = None,
    ) -> List[Dict[str, Any]]:
        if policies.is_shipper(actor):
            target = actor.account_id
        elif policies.is_employee(actor):
            if not shipper_id:
                raise ValidationError("shipper_id is required")
            target = shipper_id
        else:
            raise ForbiddenError("Only shippers or staff can list shipper loads")
        statuses = [status.value] if status else None
        return self.store.list_loads(statuses=statuses, shipper_id=target)

    def loads_for_trucker(self, actor: AccountRecord, status: Optional[LoadStatus] = None) -> List[Dict[str, Any]]:
        if not policies.is_trucker(actor):
            raise ForbiddenError("Only truckers have assigned loads")
        statuses = [status.value] if status else None
        return self.store.list_loads(statuses=statuses, assigned_to=actor.account_id)

    def load_stats(self, actor: AccountRecord) -> Dict[str, Any]:
        if policies.is_shipper(actor):
            counts = self.store.load_counts(shipper_id=actor.account_id)
        elif policies.is_employee(actor):
            counts = self.store.load_counts()
        else:
            raise ForbiddenError("Only shippers or staff can view load statistics")
        by_status = {status.value: int(counts.get(status.value, 0)) for status in LoadStatus}
        return {"total": sum(by_status.values()), "by_status": by_status}

    def load_timeline(self, actor: AccountRecord, load_id: str) -> List[Dict[str, Any]]:
        load = self._load(load_id)
        if not policies.can_view_load(actor, load):
            raise ForbiddenError("You are not allowed to view this load")
        return self.store.list_timeline(load_id)

    def cancel_load(self, actor: AccountRecord, load_id: str) -> Dict[str, Any]:
        with self.store.transaction():
            load = self._load(load_id)
            if not policies.can_manage_load(actor, load):
                raise ForbiddenError("Only the shipper who posted this load can cancel it")
            if load.status not in OPEN_LOAD_STATUSES:
                raise InvalidStateError(f"Load cannot be cancelled once {load.status.value}")
            self._validate_load_transition(load.status, LoadStatus.CANCELLED)
            previous = load.status
            load.status = LoadStatus.CANCELLED
            load.cancelled_at = _utcnow()
            row = self.store.save_load(load)
            rejected = self.store.reject_open_bids(load_id, CANCELLATION_REJECTION_REASON)
            self._timeline(load_id, "load_cancelled", actor, {"from": previous.value, "rejected_bids": rejected})
        logger.info("Load cancelled", load_id=load_id, rejected_bids=len(rejected))
        return row

    def update_load_status(self, actor: AccountRecord, load_id: str, status: str) -> Dict[str, Any]:
        """Trucker-driven moves: start transit, or mark a POD-backed load delivered."""
        normalized = (status or "").strip().lower().replace("_", " ")
        targets = {"in transit": LoadStatus.IN_TRANSIT, "delivered": LoadStatus.DELIVERED}
        target = targets.get(normalized)
        if target is None:
            raise ValidationError("Status must be 'In Transit' or 'Delivered'")

        with self.store.transaction():
            load = self._load(load_id)
            if not policies.can_drive_load(actor, load):
                raise ForbiddenError("Only the assigned trucker can update this load")
            if target == LoadStatus.DELIVERED and not load.proof_of_delivery:
                raise InvalidStateError("Proof of delivery must be uploaded before marking delivered")
            self._validate_load_transition(load.status, target)
            previous = load.status
            load.status = target
            row = self.store.save_load(load)
            tracking_status = TrackingStatus.IN_TRANSIT if target == LoadStatus.IN_TRANSIT else TrackingStatus.DELIVERED
            tracking = self.tracking.sync_from_load(load_id, tracking_status)
            self._timeline(load_id, "load_status_changed", actor, {"from": previous.value, "to": target.value})

        logger.info("Load status updated", load_id=load_id, status=target.value, tracking_synced=tracking is not None)
        return row

    def upload_proof_of_delivery(self, actor: AccountRecord, load_id: str, files: List[ProofFile]) -> Dict[str, Any]:
        if not files:
            raise ValidationError("At least one proof-of-delivery file is required")

        with self.store.transaction():
            load = self._load(load_id)
            if not policies.can_drive_load(actor, load):
                raise ForbiddenError("Only the assigned trucker can upload proof of delivery")
            if load.status not in POD_UPLOAD_STATUSES:
                raise InvalidStateError(f"Proof of delivery cannot be uploaded while load is {load.status.value}")
            self._validate_load_transition(load.status, LoadStatus.POD_UPLOADED)
            folder = load.shipment_number or load.load_id
            now = _utcnow()
            for item in files:
                load.proof_of_delivery.append(
                    ProofFile(
                        file_name=item.file_name,
                        file_url=item.file_url,
                        content_type=item.content_type,
                        storage_key=f"pod/{folder}/{item.file_name}",
                        uploaded_at=now,
                    )
                )
            previous = load.status
            load.status = LoadStatus.POD_UPLOADED
            row = self.store.save_load(load)
            self._timeline(
                load_id,
                "pod_uploaded",
                actor,
                {"from": previous.value, "files": [item.file_name for item in files]},
            )
        logger.info("Proof of delivery uploaded", load_id=load_id, files=len(files))
        return row

    def approve_delivery(self, actor: AccountRecord, load_id: str) -> Dict[str, Any]:
        with self.store.transaction():
            load = self._load(load_id)
            if not policies.can_manage_load(actor, load):
                raise ForbiddenError("Only the shipper who posted this load can approve delivery")
            if load.status != LoadStatus.POD_UPLOADED:
                raise InvalidStateError("Delivery can only be approved after proof of delivery is uploaded")
            if not load.proof_of_delivery:
                raise InvalidStateError("Load has no proof-of-delivery files")
            self._validate_load_transition(load.status, LoadStatus.DELIVERED)
            load.status = LoadStatus.DELIVERED
            load.delivery_approval = True
            load.delivery_approved_at = _utcnow()
            row = self.store.save_load(load)
            self.tracking.sync_from_load(load_id, TrackingStatus.DELIVERED)
            self._timeline(load_id, "delivery_approved", actor, {})

        logger.info("Delivery approved", load_id=load_id, shipper_id=load.shipper_id)
        self.notifier.delivery_approved(actor, load)
        trucker = self.accounts.find(load.assigned_to or "")
        if trucker is not None:
            self.notifier.delivery_approved(trucker, load)
        return row

    # ------------------------------------------------------------------ #
    # Bids
    # ------------------------------------------------------------------ #

    def _place(
        self,
        actor: AccountRecord,
        carrier: AccountRecord,
        request: BidPlaceRequest,
    ) -> Dict[str, Any]:
        with self.store.transaction():
            load = self._load(request.load_id)
            if load.status not in OPEN_LOAD_STATUSES:
                raise ConflictError(f"Load is not open for bidding (status {load.status.value})")
            if self.store.find_open_bid(load.load_id, carrier.account_id) is not None:
                raise ConflictError("You have already placed a bid on this load")

            bid = BidRecord(
                bid_id=self.store.generate_id("bid"),
                load_id=load.load_id,
                carrier_id=carrier.account_id,
                placed_by=actor.account_id,
                rate=request.rate,
                message=request.message,
                estimated_pickup_date=request.estimated_pickup_date,
                estimated_delivery_date=request.estimated_delivery_date,
                status=BidStatus.PENDING_APPROVAL,
            )
            row = self.store.insert_bid(bid)
            if load.status == LoadStatus.POSTED:
                self._validate_load_transition(load.status, LoadStatus.BIDDING)
                load.status = LoadStatus.BIDDING
                self.store.save_load(load)
            self._timeline(
                load.load_id,
                "bid_placed",
                actor,
                {"bid_id": bid.bid_id, "carrier_id": carrier.account_id, "rate": bid.rate},
            )
        logger.info("Bid placed", bid_id=bid.bid_id, load_id=load.load_id, carrier_id=carrier.account_id, rate=bid.rate)
        return self._bid_view(row)

    def place_bid(self, actor: AccountRecord, request: BidPlaceRequest) -> Dict[str, Any]:
        if not policies.can_place_bid(actor):
            raise ForbiddenError("Only approved truckers can place bids")
        return self._place(actor, actor, request)

    def place_bid_by_inhouse(self, actor: AccountRecord, request: InhouseBidRequest) -> Dict[str, Any]:
        if not policies.can_place_bid_for_trucker(actor):
            raise ForbiddenError("Only CMT or sales staff can place bids for truckers")
        carrier = self.accounts.require(request.carrier_id)
        if not policies.is_trucker(carrier):
            raise ValidationError(f"Account {carrier.account_id} is not an approved trucker")
        return self._place(actor, carrier, request)

    def update_bid(self, actor: AccountRecord, bid_id: str, request: BidUpdateRequest) -> Dict[str, Any]:
        with self.store.transaction():
            bid = self._bid(bid_id)
            if not policies.can_edit_bid(actor, bid):
                raise ForbiddenError("You can only edit your own bids")
            if bid.status not in (BidStatus.PENDING_APPROVAL, BidStatus.PENDING):
                raise InvalidStateError(f"Bid cannot be edited once {bid.status.value}")

            rate_changed = request.rate is not None and request.rate != bid.rate
            if request.rate is not None:
                bid.rate = request.rate
            if request.message is not None:
                bid.message = request.message
            if request.estimated_pickup_date is not None:
                bid.estimated_pickup_date = request.estimated_pickup_date
            if request.estimated_delivery_date is not None:
                bid.estimated_delivery_date = request.estimated_delivery_date

            if rate_changed and bid.status == BidStatus.PENDING:
                self._validate_bid_transition(bid.status, BidStatus.PENDING_APPROVAL)
                bid.status = BidStatus.PENDING_APPROVAL
                bid.intermediate_rate = None
                bid.intermediate_approved_by = None
                bid.intermediate_approved_by_name = None
                bid.intermediate_approved_at = None
            row = self.store.save_bid(bid)
            self._timeline(
                bid.load_id,
                "bid_updated",
                actor,
                {"bid_id": bid.bid_id, "rate": bid.rate, "status": bid.status.value},
            )
        logger.info("Bid updated", bid_id=bid_id, rate_changed=rate_changed, status=bid.status.value)
        return self._bid_view(row)

    def approve_intermediate(
        self,
        actor: AccountRecord,
        bid_id: str,
        intermediate_rate: Optional[float] = None,
        auto: bool = False,
    ) -> Dict[str, Any]:
        """Record the marked-up rate the shipper will see and release the bid to Pending."""
        if not policies.can_approve_intermediate(actor):
            raise ForbiddenError("Only CMT staff can approve intermediate rates")
        if not auto and (intermediate_rate is None or intermediate_rate <= 0):
            raise ValidationError("intermediate_rate must be greater than zero")

        with self.store.transaction():
            bid = self._bid(bid_id)
            if bid.status != BidStatus.PENDING_APPROVAL:
                raise InvalidStateError(f"Bid is {bid.status.value}, expected PendingApproval")
            self._validate_bid_transition(bid.status, BidStatus.PENDING)
            rate = apply_markup(bid.rate, self.settings.markup_multiplier()) if auto else float(intermediate_rate)
            bid.intermediate_rate = rate
            bid.intermediate_approved_by = actor.account_id
            bid.intermediate_approved_by_name = actor.name
            bid.intermediate_approved_at = _utcnow()
            bid.status = BidStatus.PENDING
            row = self.store.save_bid(bid)
            self._timeline(
                bid.load_id,
                "bid_intermediate_approved",
                actor,
                {"bid_id": bid.bid_id, "intermediate_rate": rate, "auto": auto},
            )
        logger.info("Intermediate rate approved", bid_id=bid_id, intermediate_rate=rate, auto=auto)
        return self._bid_view(row)

    def decide_bid_after_markup(
        self,
        actor: AccountRecord,
        bid_id: str,
        request: BidDecisionRequest,
        channel: str = "shipper",
    ) -> Dict[str, Any]:
        """Final decision on a bid whose markup has been approved."""
        if channel == "sales" and not policies.can_decide_bid_as_sales(actor):
            raise ForbiddenError("Only sales staff or admins can approve bids through the sales desk")
        return self._decide(actor, bid_id, request, decidable=(BidStatus.PENDING,), channel=channel)

    def decide_bid_direct(self, actor: AccountRecord, bid_id: str, request: BidDecisionRequest) -> Dict[str, Any]:
        """Internal proxy decision; may skip the markup step."""
        if not policies.can_decide_bid_direct(actor):
            raise ForbiddenError("Only sales staff or admins can accept bids on a shipper's behalf")
        return self._decide(
            actor,
            bid_id,
            request,
            decidable=(BidStatus.PENDING_APPROVAL, BidStatus.PENDING),
            channel="inhouse",
        )

    def _decide(
        self,
        actor: AccountRecord,
        bid_id: str,
        request: BidDecisionRequest,
        decidable: Tuple[BidStatus, ...],
        channel: str,
    ) -> Dict[str, Any]:
        snapshot = self._bid(bid_id)
        load_snapshot = self._load(snapshot.load_id)
        if not policies.can_decide_bid(actor, load_snapshot):
            raise ForbiddenError("You are not allowed to decide bids on this load")
        if snapshot.status not in decidable:
            raise InvalidStateError(
                f"Bid is {snapshot.status.value}, expected one of {[status.value for status in decidable]}"
            )

        if request.status == BidDecision.REJECTED:
            return self._reject(actor, bid_id, request, decidable, channel)

        endpoints = self._endpoints_for(self._with_address_overrides(load_snapshot, request))
        shipper_name = self._display_name(load_snapshot.shipper_id)
        trucker_name = self._display_name(snapshot.carrier_id)

        with self.store.transaction():
            bid = self._bid(bid_id)
            load = self._load(bid.load_id)
            if bid.status not in decidable:
                raise InvalidStateError(f"Bid is {bid.status.value} and can no longer be decided")
            if load.status not in OPEN_LOAD_STATUSES:
                raise InvalidStateError(f"Load is already {load.status.value}")
            self._validate_bid_transition(bid.status, BidStatus.ACCEPTED)
            self._validate_load_transition(load.status, LoadStatus.ASSIGNED)

            now = _utcnow()
            bid.status = BidStatus.ACCEPTED
            bid.accepted_at = now
            bid.decided_by = actor.account_id
            bid.rejection_reason = None
            bid_row = self.store.save_bid(bid)

            load = self._with_address_overrides(load, request)
            load.status = LoadStatus.ASSIGNED
            load.assigned_to = bid.carrier_id
            load.accepted_bid = bid.bid_id
            load.shipment_number = (
                (request.shipment_number or "").strip() or load.shipment_number or self.store.generate_id("shipment")
            )
            load.po_number = request.po_number or load.po_number
            load.bol_number = request.bol_number or load.bol_number
            load_row = self.store.save_load(load)

            rejected = self.store.reject_open_bids(load.load_id, SIBLING_REJECTION_REASON, exclude_bid_id=bid.bid_id)
            tracking = self.tracking.ensure_tracking(
                load,
                bid,
                endpoints,
                shipper_name=shipper_name,
                trucker_name=trucker_name,
            )
            self._timeline(
                load.load_id,
                "bid_accepted",
                actor,
                {
                    "bid_id": bid.bid_id,
                    "carrier_id": bid.carrier_id,
                    "channel": channel,
                    "rejected_bids": rejected,
                    "tracking_id": tracking.get("tracking_id") if tracking else None,
                },
            )

        logger.info(
            "Bid accepted",
            bid_id=bid.bid_id,
            load_id=load.load_id,
            carrier_id=bid.carrier_id,
            channel=channel,
            rejected_bids=len(rejected),
            tracking_created=tracking is not None,
        )
        carrier = self.accounts.find(bid.carrier_id)
        if carrier is not None:
            self.notifier.bid_accepted(carrier, load, bid)
            if request.notify_shipper:
                shipper = self.accounts.find(load.shipper_id)
                if shipper is not None:
                    self.notifier.bid_accepted_shipper(shipper, carrier, load)
        return {"bid": self._bid_view(bid_row), "load": load_row, "tracking": tracking, "rejected_bids": rejected}

    def _reject(
        self,
        actor: AccountRecord,
        bid_id: str,
        request: BidDecisionRequest,
        decidable: Tuple[BidStatus, ...],
        channel: str,
    ) -> Dict[str, Any]:
        with self.store.transaction():
            bid = self._bid(bid_id)
            if bid.status not in decidable:
                raise InvalidStateError(f"Bid is {bid.status.value} and can no longer be decided")
            self._validate_bid_transition(bid.status, BidStatus.REJECTED)
            bid.status = BidStatus.REJECTED
            bid.rejected_at = _utcnow()
            bid.rejection_reason = (request.reason or "").strip() or "Bid was not selected"
            bid.decided_by = actor.account_id
            row = self.store.save_bid(bid)
            self._timeline(
                bid.load_id,
                "bid_rejected",
                actor,
                {"bid_id": bid.bid_id, "reason": bid.rejection_reason, "channel": channel},
            )
        logger.info("Bid rejected", bid_id=bid_id, load_id=bid.load_id, channel=channel)
        carrier = self.accounts.find(bid.carrier_id)
        if carrier is not None:
            self.notifier.bid_rejected(carrier, self._load(bid.load_id), bid)
        return {"bid": self._bid_view(row), "load": self.store.get_load(bid.load_id), "tracking": None, "rejected_bids": []}

    @staticmethod
    def _with_address_overrides(load: LoadRecord, request: BidDecisionRequest) -> LoadRecord:
        updated = load.model_copy(deep=True)
        if request.origin_address_line1:
            updated.origin.address_line1 = request.origin_address_line1
        if request.origin_address_line2:
            updated.origin.address_line2 = request.origin_address_line2
        if request.destination_address_line1:
            updated.destination.address_line1 = request.destination_address_line1
        if request.destination_address_line2:
            updated.destination.address_line2 = request.destination_address_line2
        return updated

    def approve_bid_by_ops(self, actor: AccountRecord, bid_id: str, request: OpsApprovalRequest) -> Dict[str, Any]:
        """Confirm the driver and vehicle for an accepted bid; can only happen once."""
        snapshot = self._bid(bid_id)
        if not policies.can_assign_driver(actor, snapshot):
            raise ForbiddenError("Only CMT staff or the carrier can assign a driver")
        load_snapshot = self._load(snapshot.load_id)
        endpoints = self._endpoints_for(load_snapshot)
        shipper_name = self._display_name(load_snapshot.shipper_id)
        trucker_name = self._display_name(snapshot.carrier_id)

        with self.store.transaction():
            bid = self._bid(bid_id)
            if bid.status != BidStatus.ACCEPTED:
                raise InvalidStateError(f"Bid is {bid.status.value}, only Accepted bids can be approved by operations")
            if bid.ops_approved_at is not None:
                raise InvalidStateError("Bid has already been approved by operations")
            bid.driver_name = request.driver_name.strip()
            bid.driver_phone = request.driver_phone.strip()
            bid.vehicle_number = request.vehicle_number.strip()
            bid.vehicle_type = request.vehicle_type
            bid.do_document = request.do_document
            bid.ops_approved_by = actor.account_id
            bid.ops_approved_at = _utcnow()
            row = self.store.save_bid(bid)

            load = self._load(bid.load_id)
            self.tracking.ensure_tracking(load, bid, endpoints, shipper_name=shipper_name, trucker_name=trucker_name)
            tracking = self.tracking.apply_ops_assignment(load.load_id, bid)
            self._timeline(
                load.load_id,
                "bid_ops_approved",
                actor,
                {"bid_id": bid.bid_id, "vehicle_number": bid.vehicle_number, "driver_name": bid.driver_name},
            )
        logger.info(
            "Bid approved by operations",
            bid_id=bid_id,
            load_id=bid.load_id,
            vehicle_number=bid.vehicle_number,
            tracking_present=tracking is not None,
        )
        return {"bid": self._bid_view(row), "tracking": tracking}

    def withdraw_bid(self, actor: AccountRecord, bid_id: str) -> Dict[str, Any]:
        with self.store.transaction():
            bid = self._bid(bid_id)
            if not policies.can_edit_bid(actor, bid):
                raise ForbiddenError("You can only withdraw your own bids")
            if bid.status.value not in OPEN_BID_STATUSES:
                raise InvalidStateError(f"Bid cannot be withdrawn once {bid.status.value}")
            self.store.delete_bid(bid_id)
            load = self._load(bid.load_id)
            remaining = self.store.count_bids(load_id=load.load_id)
            reverted = False
            if remaining == 0 and load.status == LoadStatus.BIDDING:
                self._validate_load_transition(load.status, LoadStatus.POSTED)
                load.status = LoadStatus.POSTED
                self.store.save_load(load)
                reverted = True
            self._timeline(
                load.load_id,
                "bid_withdrawn",
                actor,
                {"bid_id": bid_id, "remaining_bids": remaining, "load_reverted": reverted},
            )
        logger.info("Bid withdrawn", bid_id=bid_id, load_id=bid.load_id, remaining_bids=remaining)
        return {"bid_id": bid_id, "load_status": load.status.value, "remaining_bids": remaining}

    def bids_for_load(self, actor: AccountRecord, load_id: str) -> List[Dict[str, Any]]:
        load = self._load(load_id)
        if not policies.can_view_bids(actor, load):
            raise ForbiddenError("Only the load's shipper or staff can view its bids")
        return [self._bid_view(row) for row in self.store.list_bids(load_id=load_id, order="rate")]

    def bids_for_trucker(self, actor: AccountRecord, status: Optional[BidStatus] = None) -> List[Dict[str, Any]]:
        if not policies.is_trucker(actor):
            raise ForbiddenError("Only truckers have bids of their own")
        statuses = [status.value] if status else None
        rows = self.store.list_bids(carrier_id=actor.account_id, statuses=statuses, order="newest")
        return [self._bid_view(row) for row in rows]

    def pending_approval_queue(self, actor: AccountRecord) -> List[Dict[str, Any]]:
        if not policies.is_employee(actor):
            raise ForbiddenError("Only staff can view the approval queue")
        rows = self.store.list_bids(statuses=[BidStatus.PENDING_APPROVAL.value], order="newest")
        return [self._bid_view(row) for row in rows]

    def bid_stats(self, actor: AccountRecord) -> Dict[str, Any]:
        if not policies.is_employee(actor):
            raise ForbiddenError("Only staff can view bid statistics")
        stats = self.store.bid_stats()
        counts = {item["status"]: item["count"] for item in stats}
        return {
            "stats": stats,
            "total_bids": sum(counts.values()),
            "pending_bids": counts.get(BidStatus.PENDING.value, 0),
            "accepted_bids": counts.get(BidStatus.ACCEPTED.value, 0),
        }


lifecycle_engine = LifecycleEngine()
