from fastapi import APIRouter, Depends, Request, status

from .models import (
    CreatePointPolicyRequest,
    LedgerEntry,
    LedgerHistoryResponse,
    PointPayRequest,
    PointPolicy,
    PolicyPage,
    UpdatePointPolicyRequest,
    UserBalance,
)
from .service import LedgerService, PointPolicyCatalog

router = APIRouter()


def get_policy_catalog(request: Request) -> PointPolicyCatalog:
    return request.app.state.policy_catalog


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


@router.get("/point/policy", response_model=PolicyPage, tags=["Points"])
def list_point_policies(
    page: int = 0, size: int = 20, catalog: PointPolicyCatalog = Depends(get_policy_catalog)
) -> PolicyPage:
    return catalog.list_policies(page, size)


@router.post("/point/policy", response_model=PointPolicy, status_code=status.HTTP_201_CREATED, tags=["Points"])
def create_point_policy(
    request: CreatePointPolicyRequest, catalog: PointPolicyCatalog = Depends(get_policy_catalog)
) -> PointPolicy:
    return catalog.create(request.point_name, request.update_point)


@router.get("/point/policy/{policy_id}", response_model=PointPolicy, tags=["Points"])
def get_point_policy(policy_id: int, catalog: PointPolicyCatalog = Depends(get_policy_catalog)) -> PointPolicy:
    return catalog.get(policy_id)


@router.put("/point/policy/{policy_id}", response_model=PointPolicy, tags=["Points"])
def update_point_policy(
    policy_id: int,
    request: UpdatePointPolicyRequest,
    catalog: PointPolicyCatalog = Depends(get_policy_catalog),
) -> PointPolicy:
    return catalog.update(policy_id, request)


@router.delete("/point/policy/{policy_id}", tags=["Points"])
def delete_point_policy(policy_id: int, catalog: PointPolicyCatalog = Depends(get_policy_catalog)):
    catalog.delete(policy_id)
    return {"deleted": True, "policy_id": policy_id}


@router.post("/point/pay", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Points"])
def pay_points(request: PointPayRequest, ledger: LedgerService = Depends(get_ledger_service)) -> LedgerEntry:
    return ledger.pay(request)


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: int, ledger: LedgerService = Depends(get_ledger_service)) -> UserBalance:
    return ledger.get_balance(user_id)


@router.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(
    user_id: int, limit: int = 50, offset: int = 0, ledger: LedgerService = Depends(get_ledger_service)
) -> LedgerHistoryResponse:
    return ledger.get_ledger_history(user_id, limit, offset)
