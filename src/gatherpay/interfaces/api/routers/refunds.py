# src/gatherpay/interfaces/api/routers/refunds.py
from typing import List

from fastapi import APIRouter, Depends, Query

from gatherpay.application.services import RefundEngine
from gatherpay.interfaces.api.deps import CurrentUser, require_user, require_admin, get_refund_service
from gatherpay.interfaces.api.schemas import (
    RefundEligibilityOut, RefundRequestIn, RefundRequestOut, RefundProcessIn, PendingRefundsOut,
)

router = APIRouter(prefix="/refunds", tags=["Refunds"])


@router.get("/payments/{payment_id}/eligibility", response_model=RefundEligibilityOut)
def check_eligibility(
    payment_id: int,
    user: CurrentUser = Depends(require_user),
    refunds: RefundEngine = Depends(get_refund_service),
):
    return refunds.check_eligibility(user.user_id, payment_id)


@router.post("", response_model=RefundRequestOut, status_code=201)
async def request_refund(
    body: RefundRequestIn,
    user: CurrentUser = Depends(require_user),
    refunds: RefundEngine = Depends(get_refund_service),
):
    return await refunds.request_refund(user.user_id, body.payment_id, body.reason, body.details)


@router.get("/me", response_model=List[RefundRequestOut])
def my_refunds(
    user: CurrentUser = Depends(require_user),
    refunds: RefundEngine = Depends(get_refund_service),
):
    return refunds.list_user_requests(user.user_id)


@router.get("/pending", response_model=PendingRefundsOut)
def pending_refunds(
    page: int = Query(default=1, ge=1),
    size: int = Query(default=20, ge=1, le=100),
    admin: CurrentUser = Depends(require_admin),
    refunds: RefundEngine = Depends(get_refund_service),
):
    items, total = refunds.list_pending(page, size)
    return PendingRefundsOut(
        items=[RefundRequestOut.model_validate(r) for r in items], total=total, page=page, size=size,
    )


@router.post("/{request_id}/process", response_model=RefundRequestOut)
async def process_refund(
    request_id: int,
    body: RefundProcessIn,
    admin: CurrentUser = Depends(require_admin),
    refunds: RefundEngine = Depends(get_refund_service),
):
    return await refunds.process_refund(request_id, body.approved, admin_id=admin.user_id, notes=body.notes)
