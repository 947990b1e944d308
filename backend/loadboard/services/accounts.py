"""Account registration and approval for shippers, truckers, and staff."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loadboard.core.errors import ForbiddenError, NotFoundError, ValidationError
from loadboard.core.logging import logger
from loadboard.models.accounts import (
    AccountCreateRequest,
    AccountRecord,
    AccountStatus,
    AccountStatusRequest,
    AccountType,
    EmployeeRole,
)
from loadboard.services import policies
from loadboard.services.lifecycle_state import LifecycleStateStore, lifecycle_state_store


class AccountService:
    """Registry of every party that can act on the load board."""

    def __init__(self, store: Optional[LifecycleStateStore] = None) -> None:
        self.store = store or lifecycle_state_store

    def find(self, account_id: str) -> Optional[AccountRecord]:
        row = self.store.get_account((account_id or "").strip())
        return AccountRecord(**row) if row else None

    def require(self, account_id: str) -> AccountRecord:
        account = self.find(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def approved_truckers(self) -> List[AccountRecord]:
        rows = self.store.list_accounts(
            account_type=AccountType.TRUCKER.value,
            status=AccountStatus.APPROVED.value,
        )
        return [AccountRecord(**row) for row in rows]

    def register(self, request: AccountCreateRequest, actor: Optional[AccountRecord] = None) -> Dict[str, Any]:
        """Shippers and truckers self-register as pending; staff accounts are created by admins."""
        status = AccountStatus.PENDING
        role = None
        department = None
        if request.account_type == AccountType.EMPLOYEE:
            bootstrap = not self.store.list_accounts(account_type=AccountType.EMPLOYEE.value)
            if not bootstrap and (actor is None or not policies.can_manage_accounts(actor)):
                raise ForbiddenError("Only an admin can create employee accounts")
            role = EmployeeRole.SUPERADMIN if bootstrap else (request.role or EmployeeRole.EMPLOYEE)
            department = (request.department or "").strip() or None
            status = AccountStatus.APPROVED
        elif request.role is not None:
            raise ValidationError("Only employee accounts can carry a role")

        email = request.email.strip().lower()
        if "@" not in email:
            raise ValidationError("A valid email address is required")

        record = AccountRecord(
            account_id=self.store.generate_id("account"),
            account_type=request.account_type,
            status=status,
            name=request.name.strip(),
            email=email,
            phone_no=request.phone_no,
            comp_name=request.comp_name,
            mc_dot_no=request.mc_dot_no,
            city=request.city,
            state=request.state,
            role=role,
            department=department,
        )
        row = self.store.insert_account(record)
        logger.info(
            "Account registered",
            account_id=record.account_id,
            account_type=record.account_type.value,
            status=record.status.value,
        )
        return row

    def set_status(self, actor: AccountRecord, account_id: str, request: AccountStatusRequest) -> Dict[str, Any]:
        if not policies.can_manage_accounts(actor):
            raise ForbiddenError("Only an admin can change account status")
        account = self.require(account_id)
        if account.account_id == actor.account_id:
            raise ValidationError("You cannot change the status of your own account")
        account.status = request.status
        account.status_reason = request.reason
        account.status_updated_by = actor.account_id
        account.status_updated_at = datetime.now(timezone.utc)
        row = self.store.save_account(account)
        logger.info(
            "Account status changed",
            account_id=account.account_id,
            status=account.status.value,
            actor=actor.account_id,
        )
        return row

    def get(self, actor: AccountRecord, account_id: str) -> Dict[str, Any]:
        if actor.account_id != account_id and not policies.is_employee(actor):
            raise ForbiddenError("You can only view your own account")
        return self.require(account_id).model_dump(mode="json")

    def list_accounts(
        self,
        actor: AccountRecord,
        account_type: Optional[AccountType] = None,
        status: Optional[AccountStatus] = None,
    ) -> List[Dict[str, Any]]:
        if not policies.is_employee(actor):
            raise ForbiddenError("Only staff can list accounts")
        return self.store.list_accounts(
            account_type=account_type.value if account_type else None,
            status=status.value if status else None,
        )


account_service = AccountService()
