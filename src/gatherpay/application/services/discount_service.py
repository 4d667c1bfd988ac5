# src/gatherpay/application/services/discount_service.py
"""
DiscountResolver - prices one discount instrument against a base amount.

A purchase carries either a discount code or a reward credit (enforced by
`DiscountSelector`). Validation stops at the first failing rule and reports
that rule's message. Nothing here is written during a quote; redemptions are
recorded by PaymentOrchestrator once the payment has succeeded.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from gatherpay.domain.clock import utcnow, as_utc
from gatherpay.domain.entities import DiscountType, ProductType
from gatherpay.domain.errors import ValidationError, ConflictError, NotFoundError
from gatherpay.domain.value_objects import DiscountSelector, DiscountQuote, percent_of
from gatherpay.infrastructure.db.models import DiscountCode, RewardDiscount, User, PaymentIntent
from gatherpay.infrastructure.db.repository import DiscountRepository, UserRepository
from gatherpay.infrastructure.db.uow import SessionScope

log = logging.getLogger(__name__)

DEFAULT_CODE_VALIDITY = timedelta(days=365)


def discount_amount(discount_type: DiscountType, value: int, base_amount: int) -> int:
    if discount_type == DiscountType.PERCENTAGE:
        amount = percent_of(base_amount, value)
    else:
        amount = int(value)
    return max(0, min(amount, base_amount))


class DiscountResolver:
    def __init__(self, session_scope: SessionScope, clock: Callable[[], datetime] = utcnow):
        self.session_scope = session_scope
        self.clock = clock

    # --- quoting ---

    def resolve(
        self,
        selector: DiscountSelector,
        user: User,
        product_type: ProductType,
        base_amount: int,
        *,
        db_session: Session,
    ) -> DiscountQuote:
        if base_amount < 0:
            raise ValidationError("Base amount must be non-negative")
        if selector is None or selector.is_empty:
            return DiscountQuote(valid=True, base_amount=base_amount)
        repo = DiscountRepository(db_session)
        now = self.clock()
        if selector.code is not None:
            return self._resolve_code(repo, selector.code, user, product_type, base_amount, now)
        return self._resolve_reward(repo, selector.reward_id, user, base_amount, now)

    def _resolve_code(self, repo: DiscountRepository, code: str, user: User, product_type: ProductType,
                      base_amount: int, now: datetime) -> DiscountQuote:
        discount = repo.get_code(code)
        if discount is None:
            return DiscountQuote.rejected(base_amount, "Invalid discount code")
        if not discount.is_active:
            return DiscountQuote.rejected(base_amount, "Discount code is not active")
        if now < as_utc(discount.valid_from):
            return DiscountQuote.rejected(base_amount, "Discount code is not yet valid")
        if now > as_utc(discount.valid_until):
            return DiscountQuote.rejected(base_amount, "Discount code has expired")
        if discount.max_uses is not None and repo.count_redemptions(discount.id) >= discount.max_uses:
            return DiscountQuote.rejected(base_amount, "Discount code usage limit reached")
        if (discount.max_uses_per_user is not None
                and repo.count_user_redemptions(discount.id, user.id) >= discount.max_uses_per_user):
            return DiscountQuote.rejected(base_amount, "You have already used this discount code")
        if discount.min_amount_minor is not None and base_amount < discount.min_amount_minor:
            return DiscountQuote.rejected(
                base_amount, f"Minimum purchase amount of {discount.min_amount_minor} required"
            )
        if discount.product_types and product_type.value not in discount.product_types:
            return DiscountQuote.rejected(base_amount, "Discount code not valid for this product")
        if discount.allowed_countries and (user.country or "").upper() not in discount.allowed_countries:
            return DiscountQuote.rejected(base_amount, "Discount code not valid in your country")
        if discount.allowed_cities and (user.city or "") not in discount.allowed_cities:
            return DiscountQuote.rejected(base_amount, "Discount code not valid in your city")
        if discount.user_segments and (user.segment or "") not in discount.user_segments:
            return DiscountQuote.rejected(base_amount, "Discount code not valid for your account")

        return DiscountQuote(
            valid=True,
            base_amount=base_amount,
            discount_amount=discount_amount(discount.discount_type, discount.value, base_amount),
            instrument_id=discount.id,
            instrument_kind="code",
            message="Discount applied",
        )

    def _resolve_reward(self, repo: DiscountRepository, reward_id: int, user: User, base_amount: int,
                        now: datetime) -> DiscountQuote:
        reward = repo.get_reward(reward_id)
        if reward is None or reward.user_id != user.id:
            return DiscountQuote.rejected(base_amount, "Reward not found")
        if reward.redeemed_at is not None:
            return DiscountQuote.rejected(base_amount, "Reward has already been used")
        if now > as_utc(reward.expires_at):
            return DiscountQuote.rejected(base_amount, "Reward has expired")
        return DiscountQuote(
            valid=True,
            base_amount=base_amount,
            discount_amount=discount_amount(reward.discount_type, reward.value, base_amount),
            instrument_id=reward.id,
            instrument_kind="reward",
            message=f"{reward.tier} reward applied",
        )

    def preview(self, selector: DiscountSelector, user_id: int, product_type: ProductType,
                base_amount: int) -> DiscountQuote:
        with self.session_scope() as s:
            user = UserRepository(s).find_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found")
            return self.resolve(selector, user, product_type, base_amount, db_session=s)

    # --- redemption (after payment success only) ---

    def redemption_conflict(self, payment: PaymentIntent, *, db_session: Session) -> Optional[str]:
        """Reason the payment's reward can no longer be consumed by it, or None. Locks the reward."""
        if payment.reward_discount_id is None:
            return None
        reward = DiscountRepository(db_session).get_reward(payment.reward_discount_id, lock=True)
        if reward is None:
            return f"reward {payment.reward_discount_id} no longer exists"
        if reward.redeemed_at is not None and reward.payment_intent_id != payment.id:
            return f"reward {reward.id} already redeemed by payment {reward.payment_intent_id}"
        return None

    def record_redemption(self, payment: PaymentIntent, *, db_session: Session) -> None:
        repo = DiscountRepository(db_session)
        if payment.discount_code_id is not None:
            if repo.find_redemption(payment.id) is None:
                repo.add_redemption(
                    discount_code_id=payment.discount_code_id,
                    user_id=payment.user_id,
                    payment_intent_id=payment.id,
                    amount_minor=payment.discount_amount_minor,
                )
        elif payment.reward_discount_id is not None:
            reward = repo.get_reward(payment.reward_discount_id, lock=True)
            if reward is not None and reward.redeemed_at is None:
                reward.redeemed_at = self.clock()
                reward.payment_intent_id = payment.id

    # --- administration ---

    def create_code(
        self,
        *,
        code: str,
        discount_type: DiscountType,
        value: int,
        created_by: Optional[int] = None,
        description: Optional[str] = None,
        max_uses: Optional[int] = None,
        max_uses_per_user: Optional[int] = None,
        min_amount_minor: Optional[int] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        product_types: Optional[List[str]] = None,
        allowed_countries: Optional[List[str]] = None,
        allowed_cities: Optional[List[str]] = None,
        user_segments: Optional[List[str]] = None,
    ) -> DiscountCode:
        normalized = (code or "").strip().upper()
        if not normalized:
            raise ValidationError("Discount code must not be empty")
        if value < 0:
            raise ValidationError("Discount value must be non-negative")
        if discount_type == DiscountType.PERCENTAGE and value > 100:
            raise ValidationError("Percentage discount must be between 0 and 100")
        start = valid_from or self.clock()
        end = valid_until or (start + DEFAULT_CODE_VALIDITY)
        if as_utc(end) <= as_utc(start):
            raise ValidationError("Discount validity window is empty")
        for product in product_types or []:
            if product not in ProductType.__members__:
                raise ValidationError(f"Unknown product type: {product}")

        with self.session_scope() as s:
            repo = DiscountRepository(s)
            if repo.get_code(normalized) is not None:
                raise ConflictError("Discount code already exists")
            discount = repo.add_code(
                code=normalized,
                description=description,
                discount_type=discount_type,
                value=value,
                max_uses=max_uses,
                max_uses_per_user=max_uses_per_user,
                min_amount_minor=min_amount_minor,
                valid_from=start,
                valid_until=end,
                product_types=list(product_types or []),
                allowed_countries=[c.upper() for c in (allowed_countries or [])],
                allowed_cities=list(allowed_cities or []),
                user_segments=list(user_segments or []),
                is_active=True,
                created_by=created_by,
            )
        log.info(f"Discount code {normalized} created by {created_by}")
        return discount

    def deactivate_code(self, code: str) -> DiscountCode:
        with self.session_scope() as s:
            discount = DiscountRepository(s).get_code(code)
            if discount is None:
                raise NotFoundError("Discount code not found")
            discount.is_active = False
        return discount

    def grant_reward(self, user_id: int, tier: str, discount_type: DiscountType, value: int,
                     expires_in_days: int = 30) -> RewardDiscount:
        if value < 0 or (discount_type == DiscountType.PERCENTAGE and value > 100):
            raise ValidationError("Invalid reward value")
        if expires_in_days <= 0:
            raise ValidationError("Reward must expire in the future")
        with self.session_scope() as s:
            if UserRepository(s).find_by_id(user_id) is None:
                raise NotFoundError("User not found")
            reward = DiscountRepository(s).add_reward(
                user_id=user_id,
                tier=tier,
                discount_type=discount_type,
                value=value,
                expires_at=self.clock() + timedelta(days=expires_in_days),
            )
        return reward

    def list_rewards(self, user_id: int) -> List[RewardDiscount]:
        with self.session_scope() as s:
            return DiscountRepository(s).list_available_rewards(user_id, self.clock())
