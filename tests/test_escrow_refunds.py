# tests/test_escrow_refunds.py
import pytest

from conftest import ledger_event
from gatherpay.application.services.domain_events import ESCROW_RELEASED, REFUND_PROCESSED
from gatherpay.domain.entities import (
    EscrowStatus, ParticipationStatus, PaymentStatus, RefundReason, RefundStatus,
)
from gatherpay.domain.errors import (
    ConflictError, ForbiddenError, LedgerError, LedgerUnavailableError, NotFoundError, RefundFailedError,
    ValidationError,
)
from gatherpay.infrastructure.db.models import Escrow, Event, Participation, PaymentIntent
from gatherpay.infrastructure.db.repository import EscrowRepository


@pytest.fixture
def host(make_user):
    return make_user(payout_destination="acct_host")


@pytest.fixture
def pay(services):
    """Join, open an intent and deliver the success webhook; returns (user, payment_id, participation_id)."""
    participations = services["participation_service"]
    payments = services["payment_service"]
    dispatcher = services["webhook_dispatcher"]
    deliveries = iter(range(1, 1000))

    async def _pay(user, event):
        joined = await participations.join(user.id, event.id)
        intent = await payments.create_intent(user.id, event.id)
        await dispatcher.dispatch(ledger_event(
            f"evt_pay_{next(deliveries)}", "payment_intent.succeeded", intent.external_ref,
        ))
        return intent.payment_id, joined.participation_id

    return _pay


async def attended_and_due(services, clock, event, user):
    services["event_service"].record_attendance(event.id, user.id)
    clock.advance(days=11)


# --- escrow release ---

@pytest.mark.asyncio
async def test_release_waits_for_attendance(services, ledger, pay, host, make_user, make_event, clock, session_scope):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    clock.advance(days=30)

    report = await escrow_engine.release_due()

    assert report.processed == 0
    ledger.transfer.assert_not_called()
    escrow = escrow_engine.get_for_payment(payment_id)
    assert escrow.status == EscrowStatus.HELD
    # The claim itself refuses an unverified escrow.
    with session_scope() as s:
        assert not EscrowRepository(s).claim_for_release(escrow.id, clock())


@pytest.mark.asyncio
async def test_release_waits_for_cooling_period(services, ledger, pay, host, make_user, make_event, clock):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    await pay(user, event)
    services["event_service"].record_attendance(event.id, user.id)
    clock.advance(days=9)  # event ends after 3 days + 3 hours, cooling is 7 days

    assert (await escrow_engine.release_due()).processed == 0
    ledger.transfer.assert_not_called()


@pytest.mark.asyncio
async def test_release_transfers_host_share_then_settles_on_webhook(services, ledger, pay, host, make_user,
                                                                    make_event, clock, load):
    escrow_engine = services["escrow_service"]
    released = []
    services["event_bus"].subscribe(ESCROW_RELEASED, released.append)
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)

    report = await escrow_engine.release_due()

    assert (report.processed, report.scheduled, report.failed) == (1, 1, 0)
    escrow = escrow_engine.get_for_payment(payment_id)
    assert escrow.status == EscrowStatus.SCHEDULED
    assert (escrow.platform_fee_minor, escrow.host_amount_minor) == (200, 1800)
    assert escrow.transfer_ref == "tr_1"
    args, kwargs = ledger.transfer.call_args
    assert args == ("acct_host", 1800, "EUR")
    assert kwargs["idempotency_key"] == f"escrow-{escrow.id}-release-0"
    assert released == []

    result = await services["webhook_dispatcher"].dispatch(ledger_event(
        "evt_tr_1", "transfer.paid", "tr_1", metadata={"escrow_id": str(escrow.id)},
    ))

    assert result.outcome == "released"
    assert load(Escrow, escrow.id).status == EscrowStatus.RELEASED
    assert released[0]["host_amount_minor"] == 1800
    # Not picked up again.
    assert (await escrow_engine.release_due()).processed == 0


@pytest.mark.asyncio
async def test_transfer_webhook_before_ref_is_stored(services, ledger, pay, host, make_user, make_event, clock, load):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)
    escrow_id = escrow_engine.get_for_payment(payment_id).id
    dispatcher = services["webhook_dispatcher"]

    async def transfer_and_deliver(*args, **kwargs):
        result = await dispatcher.dispatch(ledger_event(
            "evt_tr_1", "transfer.paid", "tr_fast", metadata={"escrow_id": str(escrow_id)},
        ))
        assert result.outcome == "released"
        return "tr_fast"

    ledger.transfer.side_effect = transfer_and_deliver
    await escrow_engine.release_due()

    escrow = load(Escrow, escrow_id)
    assert escrow.status == EscrowStatus.RELEASED
    assert escrow.transfer_ref == "tr_fast"


@pytest.mark.asyncio
async def test_release_without_payout_destination_stays_held(services, ledger, pay, make_user, make_event, clock):
    escrow_engine = services["escrow_service"]
    host = make_user()
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)

    report = await escrow_engine.release_due()

    assert report.skipped == 1
    ledger.transfer.assert_not_called()
    assert escrow_engine.get_for_payment(payment_id).status == EscrowStatus.HELD


@pytest.mark.asyncio
async def test_transfer_failures_retry_until_failed(services, ledger, pay, host, make_user, make_event, clock):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)
    ledger.transfer.side_effect = LedgerError("Payment provider rejected the request: account restricted")

    for attempt in range(1, 4):
        report = await escrow_engine.release_due()
        assert report.failed == 1
        escrow = escrow_engine.get_for_payment(payment_id)
        assert escrow.retry_count == attempt
        assert ledger.transfer.call_args.kwargs["idempotency_key"] == f"escrow-{escrow.id}-release-{attempt - 1}"

    assert escrow.status == EscrowStatus.FAILED
    assert (await escrow_engine.release_due()).processed == 0
    assert escrow_engine.stats()["FAILED"] == {"count": 1, "amount_minor": 2000}

    ledger.transfer.side_effect = lambda *a, **k: "tr_after_reset"
    reset = escrow_engine.retry_failed(escrow.id)
    assert (reset.status, reset.retry_count) == (EscrowStatus.HELD, 0)
    assert (await escrow_engine.release_due()).scheduled == 1


@pytest.mark.asyncio
async def test_transfer_failed_webhook_puts_escrow_back(services, pay, host, make_user, make_event, clock, load):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)
    await escrow_engine.release_due()
    escrow = escrow_engine.get_for_payment(payment_id)

    result = await services["webhook_dispatcher"].dispatch(ledger_event(
        "evt_tr_1", "transfer.failed", escrow.transfer_ref, failure_message="Account closed",
    ))

    assert result.outcome == "retry"
    stored = load(Escrow, escrow.id)
    assert stored.status == EscrowStatus.HELD
    assert stored.retry_count == 1
    assert stored.transfer_ref is None
    assert stored.failure_reason == "Account closed"


@pytest.mark.asyncio
async def test_late_transfer_success_after_timeout_is_not_paid_twice(services, ledger, pay, host, make_user,
                                                                     make_event, clock, load):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)
    ledger.transfer.side_effect = LedgerUnavailableError("Payment provider unreachable: read timeout")

    report = await escrow_engine.release_due()

    assert report.failed == 1
    escrow = escrow_engine.get_for_payment(payment_id)
    assert (escrow.status, escrow.retry_count, escrow.release_attempt) == (EscrowStatus.HELD, 1, 0)

    # The transfer went through despite the timeout.
    result = await services["webhook_dispatcher"].dispatch(ledger_event(
        "evt_tr_late", "transfer.paid", "tr_late",
        metadata={"escrow_id": str(escrow.id), "release_attempt": "0"},
    ))

    assert result.outcome == "released"
    stored = load(Escrow, escrow.id)
    assert stored.status == EscrowStatus.RELEASED
    assert stored.transfer_ref == "tr_late"
    assert (await escrow_engine.release_due()).processed == 0
    assert ledger.transfer.await_count == 1


@pytest.mark.asyncio
async def test_unknown_transfer_outcome_keeps_the_idempotency_key(services, ledger, pay, host, make_user,
                                                                  make_event, clock):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)
    escrow_id = escrow_engine.get_for_payment(payment_id).id
    ledger.transfer.side_effect = LedgerUnavailableError("Payment provider error: 503")

    await escrow_engine.release_due()
    await escrow_engine.release_due()

    keys = [c.kwargs["idempotency_key"] for c in ledger.transfer.call_args_list]
    assert keys == [f"escrow-{escrow_id}-release-0"] * 2
    assert ledger.transfer.call_args.kwargs["metadata"]["release_attempt"] == "0"

    # A definitive verdict for that attempt frees the next one to use a fresh key.
    result = await services["webhook_dispatcher"].dispatch(ledger_event(
        "evt_tr_failed", "transfer.failed", "tr_lost", failure_message="Account closed",
        metadata={"escrow_id": str(escrow_id), "release_attempt": "0"},
    ))
    assert result.outcome == "retry"
    ledger.transfer.side_effect = lambda *a, **k: "tr_new"

    assert (await escrow_engine.release_due()).scheduled == 1
    assert ledger.transfer.call_args.kwargs["idempotency_key"] == f"escrow-{escrow_id}-release-1"


@pytest.mark.asyncio
async def test_release_run_drains_more_than_one_batch(services, ledger, pay, host, make_user, make_event, clock,
                                                      monkeypatch):
    monkeypatch.setattr("gatherpay.application.services.escrow_service.RELEASE_BATCH_SIZE", 2)
    escrow_engine = services["escrow_service"]
    event = make_event(host)
    users = [make_user() for _ in range(5)]
    for user in users:
        await pay(user, event)
        services["event_service"].record_attendance(event.id, user.id)
    clock.advance(days=11)

    report = await escrow_engine.release_due()

    assert (report.processed, report.scheduled) == (5, 5)
    assert ledger.transfer.await_count == 5
    assert escrow_engine.stats()["SCHEDULED"]["count"] == 5


@pytest.mark.asyncio
async def test_escrow_is_claimed_before_the_ledger_refund(services, ledger, pay, host, make_user, make_event,
                                                          clock, load):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)
    escrow_id = escrow_engine.get_for_payment(payment_id).id

    async def refund_while_release_runs(*args, **kwargs):
        assert load(Escrow, escrow_id).status == EscrowStatus.REFUNDING
        assert (await escrow_engine.release_due()).processed == 0
        return "re_claimed"

    ledger.refund.side_effect = refund_while_release_runs

    assert await escrow_engine.refund(escrow_id) == "re_claimed"

    ledger.transfer.assert_not_called()
    stored = load(Escrow, escrow_id)
    assert stored.status == EscrowStatus.REFUNDED
    assert stored.refunded_at is not None
    assert load(PaymentIntent, payment_id).status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_unknown_refund_outcome_keeps_escrow_out_of_payout(services, ledger, pay, host, make_user, make_event,
                                                                 clock, load):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)
    escrow_id = escrow_engine.get_for_payment(payment_id).id
    ledger.refund.side_effect = LedgerUnavailableError("Payment provider unreachable: connect timeout")

    with pytest.raises(LedgerUnavailableError):
        await escrow_engine.refund(escrow_id)

    assert load(Escrow, escrow_id).status == EscrowStatus.REFUNDING
    assert (await escrow_engine.release_due()).processed == 0
    ledger.transfer.assert_not_called()
    with pytest.raises(ConflictError, match="in progress"):
        await escrow_engine.refund(escrow_id)
    assert load(PaymentIntent, payment_id).status == PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_released_escrow_cannot_be_refunded(services, pay, host, make_user, make_event, clock):
    escrow_engine = services["escrow_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    await attended_and_due(services, clock, event, user)
    await escrow_engine.release_due()
    escrow = escrow_engine.get_for_payment(payment_id)
    await services["webhook_dispatcher"].dispatch(ledger_event("evt_tr_1", "transfer.paid", escrow.transfer_ref))

    with pytest.raises(ConflictError, match="Cannot refund released escrow"):
        await escrow_engine.refund(escrow.id)


# --- refunds ---

@pytest.mark.asyncio
async def test_full_refund_request_and_processing(services, ledger, pay, host, make_user, make_event, load):
    refunds = services["refund_service"]
    processed = []
    services["event_bus"].subscribe(REFUND_PROCESSED, processed.append)
    user = make_user()
    event = make_event(host)
    payment_id, participation_id = await pay(user, event)

    eligibility = refunds.check_eligibility(user.id, payment_id)
    assert eligibility.eligible and eligibility.refundable_amount == 2000

    request = await refunds.request_refund(user.id, payment_id, RefundReason.USER_REQUEST, "Plans changed")
    assert request.status == RefundStatus.PENDING
    assert request.amount_minor == 2000
    with pytest.raises(ConflictError, match="already pending"):
        await refunds.request_refund(user.id, payment_id, RefundReason.USER_REQUEST)

    done = await refunds.process_refund(request.id, approved=True, admin_id=host.id, notes="ok")

    assert done.status == RefundStatus.PROCESSED
    assert done.ledger_refund_ref == "re_1"
    ledger.refund.assert_awaited_once_with("pi_1", 2000, idempotency_key=f"refund-{request.id}")
    assert load(PaymentIntent, payment_id).status == PaymentStatus.REFUNDED
    assert services["escrow_service"].get_for_payment(payment_id).status == EscrowStatus.REFUNDED
    assert load(Participation, participation_id).status == ParticipationStatus.CANCELLED
    assert load(Event, event.id).confirmed_count == 0
    assert processed[0]["refund_request_id"] == request.id

    with pytest.raises(ConflictError, match="already processed"):
        await refunds.process_refund(request.id, approved=True)
    assert not refunds.check_eligibility(user.id, payment_id).eligible


@pytest.mark.asyncio
async def test_partial_refund_inside_the_last_day(services, ledger, pay, host, make_user, make_event, clock):
    refunds = services["refund_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    clock.advance(hours=60)  # 12 hours before the start

    request = await refunds.request_refund(user.id, payment_id, RefundReason.USER_REQUEST)
    assert request.amount_minor == 1000

    await refunds.process_refund(request.id, approved=True)
    assert ledger.refund.call_args.args == ("pi_1", 1000)
    escrow = services["escrow_service"].get_for_payment(payment_id)
    assert escrow.status == EscrowStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_closed_before_event(services, pay, host, make_user, make_event, clock):
    refunds = services["refund_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    clock.advance(hours=70)

    with pytest.raises(ValidationError, match="Refunds close 6 hours before the event"):
        await refunds.request_refund(user.id, payment_id, RefundReason.USER_REQUEST)


@pytest.mark.asyncio
async def test_attendance_forecloses_refund(services, pay, host, make_user, make_event):
    refunds = services["refund_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    services["event_service"].record_attendance(event.id, user.id)

    eligibility = refunds.check_eligibility(user.id, payment_id)
    assert not eligibility.eligible
    assert eligibility.attendance_verified


@pytest.mark.asyncio
async def test_refund_access_checks(services, pay, host, make_user, make_event):
    refunds = services["refund_service"]
    user, stranger = make_user(), make_user()
    payment_id, _ = await pay(user, make_event(host))

    with pytest.raises(ForbiddenError):
        refunds.check_eligibility(stranger.id, payment_id)
    with pytest.raises(NotFoundError):
        refunds.check_eligibility(user.id, 999)


@pytest.mark.asyncio
async def test_rejected_refund(services, ledger, pay, host, make_user, make_event, load):
    refunds = services["refund_service"]
    user = make_user()
    payment_id, _ = await pay(user, make_event(host))
    request = await refunds.request_refund(user.id, payment_id, RefundReason.QUALITY_ISSUE)

    rejected = await refunds.process_refund(request.id, approved=False, admin_id=host.id, notes="No")

    assert rejected.status == RefundStatus.REJECTED
    ledger.refund.assert_not_called()
    assert load(PaymentIntent, payment_id).status == PaymentStatus.SUCCEEDED
    items, total = refunds.list_pending()
    assert (items, total) == ([], 0)


@pytest.mark.asyncio
async def test_ledger_failure_marks_request_failed(services, ledger, pay, host, make_user, make_event, load):
    refunds = services["refund_service"]
    user = make_user()
    payment_id, _ = await pay(user, make_event(host))
    request = await refunds.request_refund(user.id, payment_id, RefundReason.USER_REQUEST)
    ledger.refund.side_effect = LedgerError("Payment provider rejected the request: charge disputed")

    with pytest.raises(RefundFailedError):
        await refunds.process_refund(request.id, approved=True)

    failed = refunds.list_user_requests(user.id)[0]
    assert failed.status == RefundStatus.FAILED
    assert failed.admin_notes.startswith("Failed:")
    assert services["escrow_service"].get_for_payment(payment_id).status == EscrowStatus.HELD
    assert load(PaymentIntent, payment_id).status == PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_pending_listing_is_paginated(services, pay, host, make_user, make_event):
    refunds = services["refund_service"]
    event = make_event(host)
    for _ in range(3):
        user = make_user()
        payment_id, _ = await pay(user, event)
        await refunds.request_refund(user.id, payment_id, RefundReason.USER_REQUEST)

    items, total = refunds.list_pending(page=2, size=2)
    assert total == 3
    assert len(items) == 1


# --- event cancellation ---

@pytest.mark.asyncio
async def test_cancelling_an_event_refunds_everyone(services, ledger, pay, host, make_user, make_event, load):
    events = services["event_service"]
    participations = services["participation_service"]
    event = make_event(host)
    paid_user, waiting_user = make_user(), make_user()
    payment_id, paid_participation = await pay(paid_user, event)
    waiting = await participations.join(waiting_user.id, event.id)

    with pytest.raises(ForbiddenError):
        await events.cancel_event(event.id, paid_user.id, "not mine")

    summary = await events.cancel_event(event.id, host.id, "Venue closed")

    assert summary["participations_cancelled"] == 1
    assert summary["refunds"] == {"refunded": 1, "skipped": 0, "failed": 0}
    assert load(PaymentIntent, payment_id).status == PaymentStatus.REFUNDED
    assert load(Participation, paid_participation).status == ParticipationStatus.CANCELLED
    assert load(Participation, waiting.participation_id).status == ParticipationStatus.CANCELLED
    stored = load(Event, event.id)
    assert stored.is_cancelled
    assert (stored.reserved_count, stored.confirmed_count) == (0, 0)
    request = services["refund_service"].list_user_requests(paid_user.id)[0]
    assert request.reason == RefundReason.EVENT_CANCELLED

    with pytest.raises(ValidationError, match="already cancelled"):
        await events.cancel_event(event.id, host.id)


@pytest.mark.asyncio
async def test_cancelling_a_free_event_releases_confirmed_seats(services, host, make_user, make_event, load):
    event = make_event(host, price_minor=0)
    joined = await services["participation_service"].join(make_user().id, event.id)

    summary = await services["event_service"].cancel_event(event.id, host.id)

    assert summary["participations_cancelled"] == 1
    assert summary["refunds"] == {"refunded": 0, "skipped": 0, "failed": 0}
    assert load(Participation, joined.participation_id).status == ParticipationStatus.CANCELLED
    assert load(Event, event.id).confirmed_count == 0


@pytest.mark.asyncio
async def test_refund_request_on_cancelled_event_is_auto_approved(services, ledger, pay, host, make_user,
                                                                   make_event, session_scope):
    refunds = services["refund_service"]
    user = make_user()
    event = make_event(host)
    payment_id, _ = await pay(user, event)
    with session_scope() as s:
        s.get(Event, event.id).is_cancelled = True

    request = await refunds.request_refund(user.id, payment_id, RefundReason.EVENT_CANCELLED)

    assert request.status == RefundStatus.PROCESSED
    assert request.admin_notes == "Auto-approved: event cancelled"
    ledger.refund.assert_awaited_once()
