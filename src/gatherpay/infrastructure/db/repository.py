# File: src/gatherpay/infrastructure/db/repository.py
"""
Repositories for the pipeline tables. Each one wraps a caller-owned Session;
transaction boundaries belong to `session_scope()`, never to a repository.

`*_for_update` helpers take a row lock (SELECT ... FOR UPDATE) on databases
that support it; this is how concurrent API calls, webhooks and sweeps are
serialized per entity.
"""

import logging
from datetime import datetime
from typing import List, Optional, Dict, Any

from sqlalchemy import and_, func, update
from sqlalchemy.orm import Session

from gatherpay.domain.entities import (
    ParticipationStatus, PaymentStatus, EscrowStatus, RefundStatus,
)
from .models import (
    User, Event, Participation, PaymentIntent, WebhookEvent, Escrow,
    DiscountCode, DiscountRedemption, RewardDiscount, RefundRequest,
)

log = logging.getLogger(__name__)


class UserRepository:
    """Read access to collaborator-owned user profiles."""

    def __init__(self, session: Session):
        self.session = session

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)


class EventRepository:

    def __init__(self, session: Session):
        self.session = session

    def get(self, event_id: int) -> Optional[Event]:
        return self.session.get(Event, event_id)

    def get_for_update(self, event_id: int) -> Optional[Event]:
        return self.session.query(Event).filter(Event.id == event_id).with_for_update().first()

    def refresh(self, event: Event) -> Event:
        self.session.refresh(event)
        return event


class ParticipationRepository:

    def __init__(self, session: Session):
        self.session = session

    def get(self, participation_id: int) -> Optional[Participation]:
        return self.session.get(Participation, participation_id)

    def get_for_update(self, participation_id: int) -> Optional[Participation]:
        return (
            self.session.query(Participation)
            .filter(Participation.id == participation_id)
            .with_for_update()
            .first()
        )

    def find(self, user_id: int, event_id: int, lock: bool = False) -> Optional[Participation]:
        q = self.session.query(Participation).filter(
            Participation.user_id == user_id, Participation.event_id == event_id
        )
        if lock:
            q = q.with_for_update()
        return q.first()

    def add(self, **kwargs) -> Participation:
        participation = Participation(**kwargs)
        self.session.add(participation)
        self.session.flush()
        return participation

    def lapsed_reservation_ids(self, now: datetime, limit: int = 500) -> List[int]:
        rows = (
            self.session.query(Participation.id)
            .filter(
                Participation.status == ParticipationStatus.RESERVED,
                Participation.payment_expires_at < now,
            )
            .order_by(Participation.payment_expires_at.asc())
            .limit(limit)
            .all()
        )
        return [r[0] for r in rows]

    def list_for_event(self, event_id: int, statuses=None, lock: bool = False) -> List[Participation]:
        q = self.session.query(Participation).filter(Participation.event_id == event_id)
        if statuses:
            q = q.filter(Participation.status.in_(list(statuses)))
        if lock:
            q = q.with_for_update()
        return q.order_by(Participation.id.asc()).all()


class PaymentRepository:

    def __init__(self, session: Session):
        self.session = session

    def get(self, payment_id: int) -> Optional[PaymentIntent]:
        return self.session.get(PaymentIntent, payment_id)

    def get_for_update(self, payment_id: int) -> Optional[PaymentIntent]:
        return (
            self.session.query(PaymentIntent)
            .filter(PaymentIntent.id == payment_id)
            .with_for_update()
            .first()
        )

    def get_by_ref_for_update(self, external_ref: str) -> Optional[PaymentIntent]:
        return (
            self.session.query(PaymentIntent)
            .filter(PaymentIntent.external_ref == external_ref)
            .with_for_update()
            .first()
        )

    def add(self, **kwargs) -> PaymentIntent:
        payment = PaymentIntent(**kwargs)
        self.session.add(payment)
        self.session.flush()
        return payment

    def list_for_user(self, user_id: int, limit: int = 50) -> List[PaymentIntent]:
        return (
            self.session.query(PaymentIntent)
            .filter(PaymentIntent.user_id == user_id)
            .order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc())
            .limit(limit)
            .all()
        )

    def list_succeeded_for_event(self, event_id: int) -> List[PaymentIntent]:
        return (
            self.session.query(PaymentIntent)
            .filter(PaymentIntent.event_id == event_id, PaymentIntent.status == PaymentStatus.SUCCEEDED)
            .order_by(PaymentIntent.id.asc())
            .all()
        )

    def find_other_success(self, participation_id: int, exclude_payment_id: int) -> Optional[PaymentIntent]:
        return (
            self.session.query(PaymentIntent)
            .filter(
                PaymentIntent.participation_id == participation_id,
                PaymentIntent.id != exclude_payment_id,
                PaymentIntent.status == PaymentStatus.SUCCEEDED,
            )
            .first()
        )


class EscrowRepository:

    def __init__(self, session: Session):
        self.session = session

    def get(self, escrow_id: int) -> Optional[Escrow]:
        return self.session.get(Escrow, escrow_id)

    def get_for_update(self, escrow_id: int) -> Optional[Escrow]:
        return self.session.query(Escrow).filter(Escrow.id == escrow_id).with_for_update().first()

    def get_by_payment(self, payment_id: int, lock: bool = False) -> Optional[Escrow]:
        q = self.session.query(Escrow).filter(Escrow.payment_intent_id == payment_id)
        if lock:
            q = q.with_for_update()
        return q.first()

    def get_by_transfer_ref_for_update(self, transfer_ref: str) -> Optional[Escrow]:
        return (
            self.session.query(Escrow)
            .filter(Escrow.transfer_ref == transfer_ref)
            .with_for_update()
            .first()
        )

    def list_for_attendance(self, event_id: int, user_id: int) -> List[Escrow]:
        return (
            self.session.query(Escrow)
            .filter(
                Escrow.event_id == event_id,
                Escrow.user_id == user_id,
                Escrow.status.in_([EscrowStatus.HELD, EscrowStatus.FAILED]),
            )
            .with_for_update()
            .all()
        )

    def add(self, **kwargs) -> Escrow:
        escrow = Escrow(**kwargs)
        self.session.add(escrow)
        self.session.flush()
        return escrow

    def release_candidate_ids(self, now: datetime, after_id: int = 0, limit: int = 200) -> List[int]:
        """One page of due, verified HELD escrows, keyset-paginated by id."""
        rows = (
            self.session.query(Escrow.id)
            .filter(
                Escrow.id > after_id,
                Escrow.status == EscrowStatus.HELD,
                Escrow.release_at <= now,
                Escrow.attendance_verified.is_(True),
            )
            .order_by(Escrow.id.asc())
            .limit(limit)
            .all()
        )
        return [r[0] for r in rows]

    def claim_for_release(self, escrow_id: int, now: datetime) -> bool:
        """
        HELD -> SCHEDULED in a single conditional UPDATE. The attendance and
        cooling-off gate is part of the WHERE clause, so an unverified escrow
        can never be claimed whatever the caller believes.
        """
        result = self.session.execute(
            update(Escrow)
            .where(
                and_(
                    Escrow.id == escrow_id,
                    Escrow.status == EscrowStatus.HELD,
                    Escrow.attendance_verified.is_(True),
                    Escrow.release_at <= now,
                )
            )
            .values(status=EscrowStatus.SCHEDULED)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def stats(self) -> Dict[str, Dict[str, Any]]:
        rows = (
            self.session.query(Escrow.status, func.count(Escrow.id), func.coalesce(func.sum(Escrow.amount_minor), 0))
            .group_by(Escrow.status)
            .all()
        )
        out = {s.value: {"count": 0, "amount_minor": 0} for s in EscrowStatus}
        for status, count, amount in rows:
            out[status.value] = {"count": int(count), "amount_minor": int(amount)}
        return out


class DiscountRepository:

    def __init__(self, session: Session):
        self.session = session

    def get_code(self, code: str) -> Optional[DiscountCode]:
        return self.session.query(DiscountCode).filter(DiscountCode.code == code.upper()).first()

    def get_code_by_id(self, code_id: int) -> Optional[DiscountCode]:
        return self.session.get(DiscountCode, code_id)

    def add_code(self, **kwargs) -> DiscountCode:
        code = DiscountCode(**kwargs)
        self.session.add(code)
        self.session.flush()
        return code

    def count_redemptions(self, code_id: int) -> int:
        return (
            self.session.query(func.count(DiscountRedemption.id))
            .filter(DiscountRedemption.discount_code_id == code_id)
            .scalar()
        ) or 0

    def count_user_redemptions(self, code_id: int, user_id: int) -> int:
        return (
            self.session.query(func.count(DiscountRedemption.id))
            .filter(DiscountRedemption.discount_code_id == code_id, DiscountRedemption.user_id == user_id)
            .scalar()
        ) or 0

    def find_redemption(self, payment_id: int) -> Optional[DiscountRedemption]:
        return (
            self.session.query(DiscountRedemption)
            .filter(DiscountRedemption.payment_intent_id == payment_id)
            .first()
        )

    def add_redemption(self, **kwargs) -> DiscountRedemption:
        redemption = DiscountRedemption(**kwargs)
        self.session.add(redemption)
        self.session.flush()
        return redemption

    def get_reward(self, reward_id: int, lock: bool = False) -> Optional[RewardDiscount]:
        q = self.session.query(RewardDiscount).filter(RewardDiscount.id == reward_id)
        if lock:
            q = q.with_for_update()
        return q.first()

    def add_reward(self, **kwargs) -> RewardDiscount:
        reward = RewardDiscount(**kwargs)
        self.session.add(reward)
        self.session.flush()
        return reward

    def list_available_rewards(self, user_id: int, now: datetime) -> List[RewardDiscount]:
        return (
            self.session.query(RewardDiscount)
            .filter(
                RewardDiscount.user_id == user_id,
                RewardDiscount.redeemed_at.is_(None),
                RewardDiscount.expires_at > now,
            )
            .order_by(RewardDiscount.expires_at.asc())
            .all()
        )


class RefundRepository:

    def __init__(self, session: Session):
        self.session = session

    def get(self, request_id: int) -> Optional[RefundRequest]:
        return self.session.get(RefundRequest, request_id)

    def get_for_update(self, request_id: int) -> Optional[RefundRequest]:
        return (
            self.session.query(RefundRequest)
            .filter(RefundRequest.id == request_id)
            .with_for_update()
            .first()
        )

    def find_open(self, payment_id: int) -> Optional[RefundRequest]:
        return (
            self.session.query(RefundRequest)
            .filter(
                RefundRequest.payment_intent_id == payment_id,
                RefundRequest.status.in_([RefundStatus.PENDING, RefundStatus.APPROVED]),
            )
            .first()
        )

    def add(self, **kwargs) -> RefundRequest:
        request = RefundRequest(**kwargs)
        self.session.add(request)
        self.session.flush()
        return request

    def list_for_user(self, user_id: int) -> List[RefundRequest]:
        return (
            self.session.query(RefundRequest)
            .filter(RefundRequest.user_id == user_id)
            .order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
            .all()
        )

    def list_pending(self, offset: int = 0, limit: int = 20) -> List[RefundRequest]:
        return (
            self.session.query(RefundRequest)
            .filter(RefundRequest.status == RefundStatus.PENDING)
            .order_by(RefundRequest.created_at.asc(), RefundRequest.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count_pending(self) -> int:
        return (
            self.session.query(func.count(RefundRequest.id))
            .filter(RefundRequest.status == RefundStatus.PENDING)
            .scalar()
        ) or 0


class WebhookEventRepository:
    """Idempotency log keyed by the ledger's delivery id."""

    def __init__(self, session: Session):
        self.session = session

    def seen(self, event_id: str) -> bool:
        return (
            self.session.query(WebhookEvent.id).filter(WebhookEvent.event_id == event_id).first()
            is not None
        )

    def register(self, event_id: str, event_type: str) -> WebhookEvent:
        # Flushing here makes a concurrent duplicate fail on the unique key now,
        # not at commit after the side effects ran.
        row = WebhookEvent(event_id=event_id, event_type=event_type)
        self.session.add(row)
        self.session.flush()
        return row
