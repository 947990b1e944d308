"""Shared test setup: isolated lifecycle DB, no outbound e-mail or live geocoding."""
from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_lifecycle"
TMP.mkdir(parents=True, exist_ok=True)
DB_PATH = TMP / "lifecycle.db"
for suffix in ("", "-wal", "-shm"):
    stale = Path(f"{DB_PATH}{suffix}")
    if stale.exists():
        stale.unlink()

os.environ["LIFECYCLE_DB_PATH"] = str(DB_PATH)
os.environ["EMAIL_ENABLED"] = "false"
os.environ["GEOCODING_ENABLED"] = "false"
os.environ["AUTH_ENABLED"] = "false"
os.environ["AUTO_MARKUP_PERCENT"] = "5"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fastapi.testclient import TestClient  # noqa: E402

from loadboard.main import app  # noqa: E402


API = "/api/v1"


def headers(account: Dict[str, Any]) -> Dict[str, str]:
    return {"X-Actor-Id": account["account_id"]}


def unique_email(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def load_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "origin": {"city": "Dallas", "state": "TX", "lat": 32.7767, "lon": -96.797},
        "destination": {"city": "Houston", "state": "TX", "lat": 29.7604, "lon": -95.3698},
        "weight": 20000,
        "commodity": "Steel coils",
        "vehicle_type": "Flatbed",
        "pickup_date": "2026-11-02",
        "delivery_date": "2026-11-04",
        "rate": 1500,
        "rate_type": "Flat Rate",
        "load_type": "OTR",
    }
    payload.update(overrides)
    return payload


class Actors:
    """Creates approved accounts, loads, and bids through the public API."""

    def __init__(self, client: TestClient, superadmin: Dict[str, Any]) -> None:
        self.client = client
        self.superadmin = superadmin

    def _register(self, account_type: str, name: str, approve: bool = True, **extra: Any) -> Dict[str, Any]:
        body = {"account_type": account_type, "name": name, "email": unique_email(account_type), **extra}
        response = self.client.post(f"{API}/accounts", json=body, headers=headers(self.superadmin))
        assert response.status_code == 201, response.text
        account = response.json()["account"]
        if approve and account["status"] != "approved":
            approved = self.client.put(
                f"{API}/accounts/{account['account_id']}/status",
                json={"status": "approved"},
                headers=headers(self.superadmin),
            )
            assert approved.status_code == 200, approved.text
            account = approved.json()["account"]
        return account

    def shipper(self, approve: bool = True) -> Dict[str, Any]:
        return self._register("shipper", "Lone Star Shipping", approve=approve, comp_name="Lone Star Shipping LLC")

    def trucker(self, approve: bool = True) -> Dict[str, Any]:
        return self._register("trucker", "Red River Carriers", approve=approve, mc_dot_no="MC-123456")

    def employee(self, department: str, role: str = "employee") -> Dict[str, Any]:
        return self._register("employee", f"{department} Staff", department=department, role=role)

    def load(self, shipper: Dict[str, Any], **overrides: Any) -> Dict[str, Any]:
        response = self.client.post(f"{API}/load/create", json=load_payload(**overrides), headers=headers(shipper))
        assert response.status_code == 201, response.text
        return response.json()["load"]

    def bid(self, trucker: Dict[str, Any], load_id: str, rate: float = 500, message: str = "") -> Dict[str, Any]:
        response = self.client.post(
            f"{API}/bid/place",
            json={"load_id": load_id, "rate": rate, "message": message},
            headers=headers(trucker),
        )
        assert response.status_code == 201, response.text
        return response.json()["bid"]

    def approve_markup(self, cmt: Dict[str, Any], bid_id: str, rate: Optional[float] = None) -> Dict[str, Any]:
        if rate is None:
            response = self.client.put(f"{API}/bid/{bid_id}/intermediate/auto", headers=headers(cmt))
        else:
            response = self.client.put(
                f"{API}/bid/{bid_id}/intermediate",
                json={"intermediate_rate": rate},
                headers=headers(cmt),
            )
        assert response.status_code == 200, response.text
        return response.json()["bid"]

    def accept(self, shipper: Dict[str, Any], bid_id: str, **extra: Any) -> Dict[str, Any]:
        response = self.client.put(
            f"{API}/bid/{bid_id}/status",
            json={"status": "Accepted", **extra},
            headers=headers(shipper),
        )
        assert response.status_code == 200, response.text
        return response.json()


@pytest.fixture(scope="session")
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture(scope="session")
def superadmin(client: TestClient) -> Dict[str, Any]:
    response = client.post(
        f"{API}/accounts",
        json={
            "account_type": "employee",
            "name": "Operations Root",
            "email": unique_email("root"),
            "department": "Management",
        },
    )
    assert response.status_code == 201, response.text
    account = response.json()["account"]
    assert account["role"] == "superadmin"
    return account


@pytest.fixture(scope="session")
def actors(client: TestClient, superadmin: Dict[str, Any]) -> Actors:
    return Actors(client, superadmin)
