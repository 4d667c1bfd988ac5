# src/gatherpay/interfaces/api/schemas.py
from __future__ import annotations
from typing import List, Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime

from gatherpay.domain.entities import DiscountType, ProductType, RefundReason


def _to_str(v: Any) -> str | None:
    if v is None: return None
    if hasattr(v, "value"): return str(v.value)
    return str(v)


# --- Participation ---

class JoinOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    participation_id: int
    status: str
    match_score: float
    match_reasons: List[str]
    payment_required: bool
    payment_expires_at: datetime | None = None


class ParticipationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: int
    event_id: int
    status: str
    match_score: float | None = None
    finalized_at: datetime | None = None
    finalized_by: int | None = None

    @field_validator("status", mode="before")
    def _v_status(cls, v): return _to_str(v) or ""


class FinalizeAllOut(BaseModel):
    event_id: int
    finalized: int


class EventCancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AttendanceIn(BaseModel):
    user_id: int


# --- Payments ---

class PaymentCreateIn(BaseModel):
    discount_code: Optional[str] = None
    reward_id: Optional[int] = None


class PaymentIntentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    payment_id: int
    external_ref: str | None = None
    status: str
    original_amount: int
    discount_amount: int
    final_amount: int
    currency: str
    payment_expires_at: datetime | None = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    event_id: int | None = None
    participation_id: int | None = None
    product_type: str
    status: str
    original_amount_minor: int
    discount_amount_minor: int
    final_amount_minor: int
    currency: str
    external_ref: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None
    succeeded_at: datetime | None = None
    display_amount_minor: int | None = None
    display_currency: str | None = None


# --- Discounts ---

class DiscountPreviewIn(BaseModel):
    amount_minor: int = Field(ge=0)
    product_type: ProductType = ProductType.EVENT
    discount_code: Optional[str] = None
    reward_id: Optional[int] = None


class DiscountQuoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    valid: bool
    base_amount: int
    discount_amount: int
    final_amount: int
    instrument_id: int | None = None
    instrument_kind: str | None = None
    message: str | None = None


class DiscountCodeIn(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    discount_type: DiscountType
    value: int = Field(ge=0)
    description: Optional[str] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_user: Optional[int] = Field(default=None, ge=1)
    min_amount_minor: Optional[int] = Field(default=None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    product_types: List[str] = []
    allowed_countries: List[str] = []
    allowed_cities: List[str] = []
    user_segments: List[str] = []


class DiscountCodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    code: str
    discount_type: str
    value: int
    is_active: bool
    valid_from: datetime
    valid_until: datetime
    max_uses: int | None = None
    max_uses_per_user: int | None = None

    @field_validator("discount_type", mode="before")
    def _v_type(cls, v): return _to_str(v) or ""


class RewardGrantIn(BaseModel):
    user_id: int
    tier: str = Field(min_length=1, max_length=30)
    discount_type: DiscountType
    value: int = Field(ge=0)
    expires_in_days: int = Field(default=30, ge=1)


class RewardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: int
    tier: str
    discount_type: str
    value: int
    expires_at: datetime
    redeemed_at: datetime | None = None

    @field_validator("discount_type", mode="before")
    def _v_type(cls, v): return _to_str(v) or ""


# --- Refunds ---

class RefundEligibilityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    eligible: bool
    reason: str
    refundable_amount: int
    currency: str | None = None
    attendance_verified: bool
    hours_until_start: float | None = None


class RefundRequestIn(BaseModel):
    payment_id: int
    reason: RefundReason = RefundReason.USER_REQUEST
    details: Optional[str] = Field(default=None, max_length=2000)


class RefundRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    payment_intent_id: int
    user_id: int
    reason: str
    status: str
    amount_minor: int
    currency: str
    admin_notes: str | None = None
    processed_at: datetime | None = None
    ledger_refund_ref: str | None = None

    @field_validator("reason", "status", mode="before")
    def _v_enum(cls, v): return _to_str(v) or ""


class RefundProcessIn(BaseModel):
    approved: bool
    notes: Optional[str] = Field(default=None, max_length=2000)


class PendingRefundsOut(BaseModel):
    items: List[RefundRequestOut]
    total: int
    page: int
    size: int


# --- Escrow ---

class EscrowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    payment_intent_id: int
    event_id: int
    host_id: int
    amount_minor: int
    currency: str
    status: str
    attendance_verified: bool
    retry_count: int
    release_at: datetime
    transfer_ref: str | None = None
    failure_reason: str | None = None

    @field_validator("status", mode="before")
    def _v_status(cls, v): return _to_str(v) or ""


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
