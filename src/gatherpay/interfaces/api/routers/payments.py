# src/gatherpay/interfaces/api/routers/payments.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from gatherpay.application.services import PaymentOrchestrator
from gatherpay.domain.value_objects import DiscountSelector
from gatherpay.interfaces.api.deps import CurrentUser, require_user, get_payment_service
from gatherpay.interfaces.api.schemas import PaymentCreateIn, PaymentIntentOut, PaymentOut

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/events/{event_id}", response_model=PaymentIntentOut, status_code=201)
async def create_payment(
    event_id: int,
    body: PaymentCreateIn,
    user: CurrentUser = Depends(require_user),
    payments: PaymentOrchestrator = Depends(get_payment_service),
):
    selector = DiscountSelector(code=body.discount_code, reward_id=body.reward_id)
    return await payments.create_intent(user.user_id, event_id, selector)


@router.get("/me", response_model=List[PaymentOut])
def my_payments(
    display_currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    user: CurrentUser = Depends(require_user),
    payments: PaymentOrchestrator = Depends(get_payment_service),
):
    return payments.list_user_payments(user.user_id, display_currency)


@router.get("/{payment_id}", response_model=PaymentOut)
def get_payment(
    payment_id: int,
    display_currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    user: CurrentUser = Depends(require_user),
    payments: PaymentOrchestrator = Depends(get_payment_service),
):
    return payments.get_payment(payment_id, user.user_id, display_currency)
