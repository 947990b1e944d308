"""SQLite-backed entity store for accounts, loads, bids, and tracking."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from loadboard.core.config import get_settings
from loadboard.core.errors import ConflictError, InternalError
from loadboard.core.logging import logger
from loadboard.models.accounts import AccountRecord
from loadboard.models.lifecycle import (
    BidRecord,
    BidStatus,
    LoadRecord,
    LocationHistoryRecord,
    TimelineEvent,
    TrackingRecord,
)


ID_PREFIXES = {
    "account": "ACC",
    "load": "LD",
    "bid": "BID",
    "tracking": "TRK",
    "history": "LOC",
    "shipment": "SHP",
    "event": "EVT",
    "outbound": "MSG",
}

OPEN_BID_STATUSES = (BidStatus.PENDING_APPROVAL.value, BidStatus.PENDING.value)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def parse_iso_utc(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value or "").strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


class LifecycleStateStore:
    """Durable document store for the load/bid lifecycle."""

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: Optional[str] = None) -> None:
        settings = get_settings()
        self._db_path = Path(db_path or settings.lifecycle_db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeline_retention = max(100, int(settings.timeline_retention))
        self._idempotency_retention = max(100, int(settings.idempotency_retention))
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._tx_depth = 0
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    account_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_accounts_type_status ON accounts (account_type, status);

                CREATE TABLE IF NOT EXISTS loads (
                    load_id TEXT PRIMARY KEY,
                    shipper_id TEXT NOT NULL,
                    assigned_to TEXT,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_loads_status ON loads (status, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_loads_shipper ON loads (shipper_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_loads_assigned ON loads (assigned_to, created_at DESC);

                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    carrier_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    rate REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_bids_load ON bids (load_id, rate ASC, created_at ASC);
                CREATE INDEX IF NOT EXISTS idx_bids_carrier ON bids (carrier_id, created_at DESC);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_bids_open_pair
                    ON bids (load_id, carrier_id)
                    WHERE status IN ('PendingApproval', 'Pending');

                CREATE TABLE IF NOT EXISTS tracking (
                    tracking_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL UNIQUE,
                    shipment_number TEXT,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_tracking_shipment ON tracking (shipment_number);

                CREATE TABLE IF NOT EXISTS location_history (
                    history_id TEXT PRIMARY KEY,
                    tracking_id TEXT NOT NULL,
                    shipment_number TEXT,
                    vehicle_number TEXT,
                    timestamp TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_history_tracking_time
                    ON location_history (tracking_id, timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_history_vehicle_time
                    ON location_history (vehicle_number, timestamp DESC);

                CREATE TABLE IF NOT EXISTS timeline (
                    event_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_timeline_load ON timeline (load_id, timestamp DESC);

                CREATE TABLE IF NOT EXISTS outbound_messages (
                    message_id TEXT PRIMARY KEY,
                    channel TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_outbound_channel ON outbound_messages (channel, created_at DESC);

                CREATE TABLE IF NOT EXISTS idempotency (
                    key_name TEXT PRIMARY KEY,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------ #
    # Transactions and sequences
    # ------------------------------------------------------------------ #

    @contextmanager
    def transaction(self) -> Iterator["LifecycleStateStore"]:
        """Hold the store lock and commit every enclosed write at once."""
        with self._lock:
            self._tx_depth += 1
            try:
                yield self
            except sqlite3.Error as exc:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._conn.rollback()
                logger.error("Lifecycle store write failed", db_path=str(self._db_path), error=str(exc))
                raise InternalError("Lifecycle store failure") from exc
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._conn.rollback()
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._conn.commit()

    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._conn.commit()

    def _abort(self) -> None:
        if self._tx_depth == 0:
            self._conn.rollback()

    def next_sequence(self, key: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT next_value FROM sequences WHERE key_name = ?",
                (key,),
            ).fetchone()
            if row is None:
                current = 1
                self._conn.execute(
                    "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                    (key, current + 1),
                )
            else:
                current = int(row["next_value"])
                self._conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                    (current + 1, key),
                )
            self._commit()
            return current

    def generate_id(self, kind: str) -> str:
        prefix = ID_PREFIXES[kind]
        return f"{prefix}-{self.next_sequence(kind):06d}"

    def get_idempotent(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json FROM idempotency WHERE key_name = ?",
                (key,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, key: str, response: Dict[str, Any]) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO idempotency (key_name, stored_at, response_json)
                VALUES (?, ?, ?)
                ON CONFLICT(key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (key, _utc_now_iso(), _json_dumps(response)),
            )
            self._conn.execute(
                """
                DELETE FROM idempotency
                WHERE key_name NOT IN (
                    SELECT key_name FROM idempotency
                    ORDER BY stored_at DESC
                    LIMIT ?
                )
                """,
                (self._idempotency_retention,),
            )
            self._commit()

    def run_idempotent(
        self,
        scope: str,
        key: Optional[str],
        produce: Callable[[], Dict[str, Any]],
    ) -> Tuple[Dict[str, Any], bool]:
        """Replay the stored response for ``scope:key`` or produce and store it.

        Lookup, produce and store run under the store lock, so two requests
        carrying the same key never both produce. Returns ``(response, replayed)``.
        """
        if not key or not key.strip():
            return produce(), False
        key_name = f"{scope}:{key.strip()}"
        with self._lock:
            cached = self.get_idempotent(key_name)
            if cached is not None:
                return cached, True
            response = produce()
            self.set_idempotent(key_name, response)
        return response, False

    # ------------------------------------------------------------------ #
    # Accounts
    # ------------------------------------------------------------------ #

    def insert_account(self, account: AccountRecord) -> Dict[str, Any]:
        row = account.model_dump(mode="json")
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO accounts (account_id, account_type, status, email, created_at, data_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account.account_id,
                        row["account_type"],
                        row["status"],
                        account.email.strip().lower(),
                        row["created_at"],
                        _json_dumps(row),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                self._abort()
                raise ConflictError(f"An account with email {account.email} already exists") from exc
            self._commit()
        return row

    def save_account(self, account: AccountRecord) -> Dict[str, Any]:
        account.updated_at = datetime.now(timezone.utc)
        row = account.model_dump(mode="json")
        with self._lock:
            self._conn.execute(
                "UPDATE accounts SET status = ?, data_json = ? WHERE account_id = ?",
                (row["status"], _json_dumps(row), account.account_id),
            )
            self._commit()
        return row

    def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM accounts WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_accounts(
        self,
        account_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if account_type:
            clauses.append("account_type = ?")
            params.append(account_type)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM accounts {where} ORDER BY created_at ASC",
                params,
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    # ------------------------------------------------------------------ #
    # Loads
    # ------------------------------------------------------------------ #

    def insert_load(self, load: LoadRecord) -> Dict[str, Any]:
        row = load.model_dump(mode="json")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO loads (load_id, shipper_id, assigned_to, status, version, created_at, updated_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    load.load_id,
                    load.shipper_id,
                    load.assigned_to,
                    row["status"],
                    load.version,
                    row["created_at"],
                    row["updated_at"],
                    _json_dumps(row),
                ),
            )
            self._commit()
        return row

    def save_load(self, load: LoadRecord) -> Dict[str, Any]:
        """Compare-and-set write: succeeds only if the stored version still matches."""
        expected_version = load.version
        load.version = expected_version + 1
        load.updated_at = datetime.now(timezone.utc)
        row = load.model_dump(mode="json")
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE loads
                SET assigned_to = ?, status = ?, version = ?, updated_at = ?, data_json = ?
                WHERE load_id = ? AND version = ?
                """,
                (
                    load.assigned_to,
                    row["status"],
                    load.version,
                    row["updated_at"],
                    _json_dumps(row),
                    load.load_id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                load.version = expected_version
                self._abort()
                raise ConflictError(
                    f"Load {load.load_id} was modified concurrently (expected version {expected_version})"
                )
            self._commit()
        return row

    def get_load(self, load_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM loads WHERE load_id = ?",
                (load_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_loads(
        self,
        statuses: Optional[Sequence[str]] = None,
        shipper_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if statuses:
            clauses.append(f"status IN ({_placeholders(statuses)})")
            params.extend(statuses)
        if shipper_id:
            clauses.append("shipper_id = ?")
            params.append(shipper_id)
        if assigned_to:
            clauses.append("assigned_to = ?")
            params.append(assigned_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM loads {where} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def load_counts(self, shipper_id: Optional[str] = None) -> Dict[str, int]:
        with self._lock:
            if shipper_id:
                rows = self._conn.execute(
                    "SELECT status, COUNT(*) AS c FROM loads WHERE shipper_id = ? GROUP BY status",
                    (shipper_id,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT status, COUNT(*) AS c FROM loads GROUP BY status",
                ).fetchall()
        return {row["status"]: int(row["c"]) for row in rows}

    # ------------------------------------------------------------------ #
    # Bids
    # ------------------------------------------------------------------ #

    def insert_bid(self, bid: BidRecord) -> Dict[str, Any]:
        row = bid.model_dump(mode="json")
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO bids (bid_id, load_id, carrier_id, status, rate, created_at, updated_at, data_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        bid.bid_id,
                        bid.load_id,
                        bid.carrier_id,
                        row["status"],
                        bid.rate,
                        row["created_at"],
                        row["updated_at"],
                        _json_dumps(row),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                self._abort()
                raise ConflictError("You have already placed a bid on this load") from exc
            self._commit()
        return row

    def save_bid(self, bid: BidRecord) -> Dict[str, Any]:
        bid.updated_at = datetime.now(timezone.utc)
        row = bid.model_dump(mode="json")
        with self._lock:
            self._conn.execute(
                """
                UPDATE bids
                SET status = ?, rate = ?, updated_at = ?, data_json = ?
                WHERE bid_id = ?
                """,
                (row["status"], bid.rate, row["updated_at"], _json_dumps(row), bid.bid_id),
            )
            self._commit()
        return row

    def get_bid(self, bid_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM bids WHERE bid_id = ?",
                (bid_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_bids(
        self,
        load_id: Optional[str] = None,
        carrier_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        order: str = "rate",
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if load_id:
            clauses.append("load_id = ?")
            params.append(load_id)
        if carrier_id:
            clauses.append("carrier_id = ?")
            params.append(carrier_id)
        if statuses:
            clauses.append(f"status IN ({_placeholders(statuses)})")
            params.extend(statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order_by = "rate ASC, created_at ASC" if order == "rate" else "created_at DESC"
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM bids {where} ORDER BY {order_by}",
                params,
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def find_open_bid(self, load_id: str, carrier_id: str) -> Optional[Dict[str, Any]]:
        rows = self.list_bids(load_id=load_id, carrier_id=carrier_id, statuses=OPEN_BID_STATUSES)
        return rows[0] if rows else None

    def count_bids(self, load_id: Optional[str] = None, statuses: Optional[Sequence[str]] = None) -> int:
        clauses: List[str] = []
        params: List[Any] = []
        if load_id:
            clauses.append("load_id = ?")
            params.append(load_id)
        if statuses:
            clauses.append(f"status IN ({_placeholders(statuses)})")
            params.extend(statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) AS c FROM bids {where}", params).fetchone()
        return int(row["c"]) if row else 0

    def delete_bid(self, bid_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM bids WHERE bid_id = ?", (bid_id,))
            self._commit()
        return bool(cursor.rowcount)

    def reject_open_bids(self, load_id: str, reason: str, exclude_bid_id: Optional[str] = None) -> List[str]:
        """Move every open bid on a load to Rejected; returns the affected bid ids."""
        now = datetime.now(timezone.utc)
        rejected: List[str] = []
        with self._lock:
            for row in self.list_bids(load_id=load_id, statuses=OPEN_BID_STATUSES):
                if exclude_bid_id and row["bid_id"] == exclude_bid_id:
                    continue
                bid = BidRecord(**row)
                bid.status = BidStatus.REJECTED
                bid.rejection_reason = reason
                bid.rejected_at = now
                self.save_bid(bid)
                rejected.append(bid.bid_id)
        return rejected

    def bid_stats(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT status, COUNT(*) AS count, AVG(rate) AS avg_rate
                FROM bids
                GROUP BY status
                ORDER BY status
                """
            ).fetchall()
        return [
            {
                "status": row["status"],
                "count": int(row["count"]),
                "avg_rate": round(float(row["avg_rate"] or 0.0), 2),
            }
            for row in rows
        ]

    # ------------------------------------------------------------------ #
    # Tracking
    # ------------------------------------------------------------------ #

    def insert_tracking_if_absent(self, tracking: TrackingRecord) -> Tuple[Dict[str, Any], bool]:
        """Insert-or-get keyed by load id; the bool is True only for a new row."""
        row = tracking.model_dump(mode="json")
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO tracking (tracking_id, load_id, shipment_number, status, updated_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(load_id) DO NOTHING
                """,
                (
                    tracking.tracking_id,
                    tracking.load_id,
                    tracking.shipment_number or None,
                    row["status"],
                    row["updated_at"],
                    _json_dumps(row),
                ),
            )
            created = bool(cursor.rowcount)
            self._commit()
            if created:
                return row, True
            existing = self.get_tracking_for_load(tracking.load_id)
        return existing or row, False

    def save_tracking(self, tracking: TrackingRecord) -> Dict[str, Any]:
        tracking.updated_at = datetime.now(timezone.utc)
        row = tracking.model_dump(mode="json")
        with self._lock:
            self._conn.execute(
                """
                UPDATE tracking
                SET shipment_number = ?, status = ?, updated_at = ?, data_json = ?
                WHERE tracking_id = ?
                """,
                (
                    tracking.shipment_number or None,
                    row["status"],
                    row["updated_at"],
                    _json_dumps(row),
                    tracking.tracking_id,
                ),
            )
            self._commit()
        return row

    def _get_tracking_where(self, column: str, value: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT data_json FROM tracking WHERE {column} = ? ORDER BY updated_at DESC LIMIT 1",
                (value,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def get_tracking(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        return self._get_tracking_where("tracking_id", tracking_id)

    def get_tracking_for_load(self, load_id: str) -> Optional[Dict[str, Any]]:
        return self._get_tracking_where("load_id", load_id)

    def get_tracking_by_shipment(self, shipment_number: str) -> Optional[Dict[str, Any]]:
        return self._get_tracking_where("shipment_number", shipment_number)

    def count_tracking(self, load_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS c FROM tracking WHERE load_id = ?",
                (load_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    # ------------------------------------------------------------------ #
    # Location history
    # ------------------------------------------------------------------ #

    def append_location_history(self, record: LocationHistoryRecord) -> Dict[str, Any]:
        row = record.model_dump(mode="json")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO location_history (history_id, tracking_id, shipment_number, vehicle_number, timestamp, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.history_id,
                    record.tracking_id,
                    record.shipment_number,
                    record.vehicle_number,
                    row["timestamp"],
                    _json_dumps(row),
                ),
            )
            self._commit()
        return row

    def list_location_history(
        self,
        tracking_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 1000,
        skip: int = 0,
        ascending: bool = False,
    ) -> List[Dict[str, Any]]:
        direction = "ASC" if ascending else "DESC"
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT data_json FROM location_history
                WHERE tracking_id = ?
                ORDER BY timestamp {direction}
                """,
                (tracking_id,),
            ).fetchall()
        points = [json.loads(row["data_json"]) for row in rows]
        if start or end:
            lower = parse_iso_utc(start) if start else None
            upper = parse_iso_utc(end) if end else None
            filtered = []
            for point in points:
                stamp = parse_iso_utc(point.get("timestamp"))
                if stamp is None:
                    continue
                if lower and stamp < lower:
                    continue
                if upper and stamp > upper:
                    continue
                filtered.append(point)
            points = filtered
        skip = max(0, int(skip))
        return points[skip: skip + max(1, min(int(limit), 5000))]

    # ------------------------------------------------------------------ #
    # Timeline and outbound messages
    # ------------------------------------------------------------------ #

    def record_timeline_event(
        self,
        load_id: str,
        event_type: str,
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        event = TimelineEvent(
            event_id=self.generate_id("event"),
            load_id=load_id,
            event_type=event_type,
            actor=actor,
            details=details or {},
        ).model_dump(mode="json")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO timeline (event_id, load_id, event_type, actor, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event["event_id"],
                    load_id,
                    event_type,
                    actor,
                    event["timestamp"],
                    _json_dumps(event["details"]),
                ),
            )
            self._conn.execute(
                """
                DELETE FROM timeline
                WHERE event_id NOT IN (
                    SELECT event_id FROM timeline
                    ORDER BY timestamp DESC
                    LIMIT ?
                )
                """,
                (self._timeline_retention,),
            )
            self._commit()
        return event

    def list_timeline(self, load_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT event_id, load_id, event_type, actor, timestamp, details_json
                FROM timeline
                WHERE load_id = ?
                ORDER BY timestamp ASC, event_id ASC
                LIMIT 300
                """,
                (load_id,),
            ).fetchall()
        return [
            {
                "event_id": row["event_id"],
                "load_id": row["load_id"],
                "event_type": row["event_type"],
                "actor": row["actor"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def add_outbound_message(
        self,
        *,
        channel: str,
        recipient: str,
        payload: Dict[str, Any],
        status: str = "queued",
    ) -> Dict[str, Any]:
        message_id = self.generate_id("outbound")
        row = {
            "message_id": message_id,
            "channel": str(channel or "unknown"),
            "recipient": str(recipient or "unknown"),
            "status": str(status or "queued"),
            "created_at": _utc_now_iso(),
            "payload": payload or {},
        }
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO outbound_messages (message_id, channel, recipient, status, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    row["channel"],
                    row["recipient"],
                    row["status"],
                    row["created_at"],
                    _json_dumps(row),
                ),
            )
            self._commit()
        return row

    def list_outbound_messages(
        self,
        *,
        channel: Optional[str] = None,
        recipient: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if channel:
            clauses.append("channel = ?")
            params.append(channel)
        if recipient:
            clauses.append("recipient = ?")
            params.append(recipient)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(limit, 500)))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM outbound_messages {where} ORDER BY created_at DESC, message_id DESC LIMIT ?",
                params,
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]


lifecycle_state_store = LifecycleStateStore()
