"""Account models for shippers, truckers, and in-house employees."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountType(str, Enum):
    SHIPPER = "shipper"
    TRUCKER = "trucker"
    EMPLOYEE = "employee"


class AccountStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EmployeeRole(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    EMPLOYEE = "employee"


class AccountCreateRequest(BaseModel):
    """Registration payload for any account type."""

    account_type: AccountType
    name: str = Field(min_length=2)
    email: str = Field(min_length=3)
    phone_no: Optional[str] = None
    comp_name: Optional[str] = None
    mc_dot_no: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    role: Optional[EmployeeRole] = None
    department: Optional[str] = None


class AccountStatusRequest(BaseModel):
    status: AccountStatus
    reason: Optional[str] = None


class AccountRecord(BaseModel):
    """Persisted account."""

    account_id: str
    account_type: AccountType
    status: AccountStatus = AccountStatus.PENDING
    name: str
    email: str
    phone_no: Optional[str] = None
    comp_name: Optional[str] = None
    mc_dot_no: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    role: Optional[EmployeeRole] = None
    department: Optional[str] = None
    status_reason: Optional[str] = None
    status_updated_by: Optional[str] = None
    status_updated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def display_name(self) -> str:
        return self.comp_name or self.name
