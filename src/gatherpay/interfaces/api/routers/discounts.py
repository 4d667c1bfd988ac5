# src/gatherpay/interfaces/api/routers/discounts.py
from typing import List

from fastapi import APIRouter, Depends

from gatherpay.application.services import DiscountResolver
from gatherpay.domain.value_objects import DiscountSelector
from gatherpay.interfaces.api.deps import CurrentUser, require_user, require_admin, get_discount_service
from gatherpay.interfaces.api.schemas import (
    DiscountPreviewIn, DiscountQuoteOut, DiscountCodeIn, DiscountCodeOut, RewardGrantIn, RewardOut,
)

router = APIRouter(prefix="/discounts", tags=["Discounts"])


@router.post("/preview", response_model=DiscountQuoteOut)
def preview_discount(
    body: DiscountPreviewIn,
    user: CurrentUser = Depends(require_user),
    discounts: DiscountResolver = Depends(get_discount_service),
):
    selector = DiscountSelector(code=body.discount_code, reward_id=body.reward_id)
    quote = discounts.preview(selector, user.user_id, body.product_type, body.amount_minor)
    return DiscountQuoteOut.model_validate(quote)


@router.get("/rewards/me", response_model=List[RewardOut])
def my_rewards(
    user: CurrentUser = Depends(require_user),
    discounts: DiscountResolver = Depends(get_discount_service),
):
    return discounts.list_rewards(user.user_id)


@router.post("", response_model=DiscountCodeOut, status_code=201)
def create_discount_code(
    body: DiscountCodeIn,
    admin: CurrentUser = Depends(require_admin),
    discounts: DiscountResolver = Depends(get_discount_service),
):
    return discounts.create_code(created_by=admin.user_id, **body.model_dump())


@router.post("/rewards", response_model=RewardOut, status_code=201)
def grant_reward(
    body: RewardGrantIn,
    admin: CurrentUser = Depends(require_admin),
    discounts: DiscountResolver = Depends(get_discount_service),
):
    return discounts.grant_reward(
        body.user_id, body.tier, body.discount_type, body.value, expires_in_days=body.expires_in_days,
    )
