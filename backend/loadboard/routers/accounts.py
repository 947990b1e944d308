"""API routes for account registration and approval."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from loadboard.core.auth import get_actor, get_optional_actor
from loadboard.models.accounts import (
    AccountCreateRequest,
    AccountRecord,
    AccountStatus,
    AccountStatusRequest,
    AccountType,
)
from loadboard.services.accounts import account_service

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post("", status_code=201)
def register_account(
    request: AccountCreateRequest,
    actor: Optional[AccountRecord] = Depends(get_optional_actor),
):
    account = account_service.register(request, actor=actor)
    return {"success": True, "message": "Account registered", "account": account}


@router.get("")
def list_accounts(
    account_type: Optional[AccountType] = Query(default=None),
    status: Optional[AccountStatus] = Query(default=None),
    actor: AccountRecord = Depends(get_actor),
):
    accounts = account_service.list_accounts(actor, account_type=account_type, status=status)
    return {"success": True, "accounts": accounts, "count": len(accounts)}


@router.get("/{account_id}")
def get_account(account_id: str, actor: AccountRecord = Depends(get_actor)):
    return {"success": True, "account": account_service.get(actor, account_id)}


@router.put("/{account_id}/status")
def set_account_status(
    account_id: str,
    request: AccountStatusRequest,
    actor: AccountRecord = Depends(get_actor),
):
    account = account_service.set_status(actor, account_id, request)
    return {"success": True, "message": f"Account {request.status.value}", "account": account}
