# File: src/gatherpay/boot.py
"""
Composition root: settings -> PipelineConfig -> components.

`build_services()` returns the service container stored on `app.state.services`.
Tests call it with their own session scope, ledger fake and clock.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from gatherpay.config import settings, Settings, PipelineConfig
from gatherpay.domain.clock import utcnow
from gatherpay.application.services import (
    FallbackScorer,
    RemoteScorer,
    TimeoutBoundedScorer,
    MatchingDecisionEngine,
    CapacityLedger,
    DomainEventBus,
    ParticipationStateMachine,
    DiscountResolver,
    EscrowEngine,
    RefundEngine,
    PaymentOrchestrator,
    EventService,
    LedgerWebhookDispatcher,
    CurrencyConverter,
)
from gatherpay.infrastructure.db.uow import SessionScope
from gatherpay.infrastructure.ledger.client import HttpPaymentLedger, UnconfiguredLedger
from gatherpay.infrastructure.monitoring.system_monitor import SystemMonitor
from gatherpay.infrastructure.sched.scheduler import (
    SchedulerService, register_expiry_job, register_escrow_release_job,
)

log = logging.getLogger(__name__)


def build_ledger(s: Settings):
    if not s.LEDGER_API_URL or not s.LEDGER_API_KEY:
        log.warning("LEDGER_API_URL / LEDGER_API_KEY not set; payment calls will fail")
        return UnconfiguredLedger()
    return HttpPaymentLedger(s.LEDGER_API_URL, s.LEDGER_API_KEY, timeout=s.LEDGER_TIMEOUT_SECONDS)


def build_scorer(config: PipelineConfig, remote: Optional[RemoteScorer] = None) -> TimeoutBoundedScorer:
    fallback = FallbackScorer(
        accept_threshold=config.fallback_accept_threshold,
        default_radius_km=config.default_search_radius_km,
    )
    remote_enabled = config.matching_mode != "fallback"
    if remote is None and remote_enabled and config.ml_service_url:
        remote = RemoteScorer(
            config.ml_service_url,
            timeout_seconds=config.ml_timeout_seconds,
            accept_threshold=config.ml_accept_threshold,
        )
    return TimeoutBoundedScorer(
        fallback,
        remote=remote,
        timeout_seconds=config.ml_timeout_seconds,
        remote_enabled=remote_enabled,
    )


def build_services(
    session_scope: Optional[SessionScope] = None,
    ledger=None,
    config: Optional[PipelineConfig] = None,
    clock: Callable[[], datetime] = utcnow,
    remote_scorer: Optional[RemoteScorer] = None,
    with_scheduler: Optional[bool] = None,
) -> Dict[str, Any]:
    """Build and wire all application services and dependencies."""
    log.info("Building application services...")
    services: Dict[str, Any] = {}

    try:
        if session_scope is None:
            from gatherpay.infrastructure.db.uow import session_scope as default_scope
            session_scope = default_scope
        config = config or PipelineConfig.from_settings(settings)
        ledger = ledger if ledger is not None else build_ledger(settings)
        bus = DomainEventBus()

        scorer = build_scorer(config, remote=remote_scorer)
        matching = MatchingDecisionEngine(scorer, clock=clock)
        capacity = CapacityLedger()
        currency = CurrencyConverter(config.fx_base_currency, config.fx_rates)

        participations = ParticipationStateMachine(session_scope, matching, capacity, config, bus, clock=clock)
        discounts = DiscountResolver(session_scope, clock=clock)
        escrow = EscrowEngine(session_scope, ledger, config, bus, clock=clock)
        refunds = RefundEngine(session_scope, ledger, escrow, participations, config, bus, clock=clock)
        payments = PaymentOrchestrator(
            session_scope, ledger, participations, discounts, escrow, refunds, bus,
            currency=currency, clock=clock,
        )
        events = EventService(session_scope, participations, escrow, refunds, clock=clock)
        dispatcher = LedgerWebhookDispatcher(session_scope, payments, escrow, bus)

        services["config"] = config
        services["event_bus"] = bus
        services["ledger"] = ledger
        services["scorer"] = scorer
        services["matching_engine"] = matching
        services["participation_service"] = participations
        services["discount_service"] = discounts
        services["escrow_service"] = escrow
        services["refund_service"] = refunds
        services["payment_service"] = payments
        services["event_service"] = events
        services["webhook_dispatcher"] = dispatcher
        services["currency_converter"] = currency

        if with_scheduler is None:
            with_scheduler = settings.SCHEDULER_ENABLED
        scheduler = None
        if with_scheduler:
            scheduler = SchedulerService()
            register_expiry_job(scheduler, participations, settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
            register_escrow_release_job(scheduler, escrow, settings.ESCROW_RELEASE_CRON_HOUR)
        services["scheduler"] = scheduler
        services["system_monitor"] = SystemMonitor(session_scope, scheduler=scheduler)

        log.info("All services built and wired successfully.")
        return services

    except Exception as e:
        log.critical(f"Service building failed: {e}", exc_info=True)
        raise


async def close_services(services: Dict[str, Any]) -> None:
    """Release network clients held by the container."""
    scheduler = services.get("scheduler")
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    remote = getattr(services.get("scorer"), "remote", None)
    if remote is not None:
        await remote.aclose()
    ledger = services.get("ledger")
    if ledger is not None and hasattr(ledger, "aclose"):
        await ledger.aclose()
