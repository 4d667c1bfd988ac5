# src/gatherpay/application/services/matching_service.py
"""
Matching decision engine.

`RemoteScorer` talks to the intelligence service over HTTP, `FallbackScorer`
is the local deterministic rule set, and `TimeoutBoundedScorer` composes the
two: the remote call gets a hard deadline and every failure path lands on the
fallback. The fallback is a required constructor argument, so there is no
way to build a scorer whose failure path has nothing to fall back to.
"""

import asyncio
import logging
import time
from datetime import datetime
from numbers import Real
from typing import Callable, Optional

import httpx

from gatherpay.domain.clock import utcnow
from gatherpay.domain.entities import MatchSource, MatchVerdict
from gatherpay.domain.value_objects import UserMatchProfile, EventMatchProfile, MatchDecision
from gatherpay.infrastructure.monitoring.metrics import MATCH_DECISIONS, MATCH_LATENCY
from .fallback_scorer import FallbackScorer

log = logging.getLogger(__name__)


class MalformedScoreError(ValueError):
    pass


class RemoteScorer:
    """
    Client for the intelligence service's `/match` endpoint.
    Raises on transport errors and on responses that do not follow the contract.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 2.0, accept_threshold: float = 0.6,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.match_url = f"{base_url.rstrip('/')}/match"
        self.accept_threshold = accept_threshold
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def score(self, user: UserMatchProfile, event: EventMatchProfile) -> MatchDecision:
        response = await self.http_client.post(
            self.match_url,
            json={"user": user.to_features(), "event": event.to_features()},
        )
        response.raise_for_status()
        return self.parse(response.json())

    def parse(self, data) -> MatchDecision:
        if not isinstance(data, dict):
            raise MalformedScoreError("Scorer response is not an object")

        score = data.get("score")
        if isinstance(score, bool) or not isinstance(score, Real) or not (0.0 <= float(score) <= 1.0):
            raise MalformedScoreError(f"Invalid score: {score!r}")
        score = float(score)

        decision = data.get("decision")
        if decision is None:
            verdict = MatchVerdict.ACCEPT if score >= self.accept_threshold else MatchVerdict.REJECT
        else:
            try:
                verdict = MatchVerdict(str(decision).lower())
            except ValueError:
                raise MalformedScoreError(f"Invalid decision: {decision!r}")

        reasons = data.get("reasons") or []
        if not isinstance(reasons, list) or not all(isinstance(r, str) for r in reasons):
            raise MalformedScoreError("Reasons must be a list of strings")

        return MatchDecision(
            score=score,
            verdict=verdict,
            reasons=tuple(reasons),
            source=MatchSource.ML,
            fallback_used=False,
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()


class TimeoutBoundedScorer:
    def __init__(self, fallback: FallbackScorer, remote: Optional[RemoteScorer] = None,
                 timeout_seconds: float = 2.0, remote_enabled: bool = True):
        if not isinstance(fallback, FallbackScorer):
            raise TypeError("TimeoutBoundedScorer requires a FallbackScorer instance")
        self.fallback = fallback
        self.remote = remote
        self.timeout_seconds = timeout_seconds
        self.remote_enabled = remote_enabled

    async def score(self, user: UserMatchProfile, event: EventMatchProfile, now: datetime) -> MatchDecision:
        if self.remote is not None and self.remote_enabled:
            try:
                return await asyncio.wait_for(self.remote.score(user, event), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                log.warning(f"Remote scorer timed out after {self.timeout_seconds}s "
                            f"(user={user.user_id}, event={event.event_id}); using fallback")
            except Exception as e:
                log.warning(f"Remote scorer failed (user={user.user_id}, event={event.event_id}): {e!r}; "
                            f"using fallback")
        return self._fallback(user, event, now)

    def _fallback(self, user: UserMatchProfile, event: EventMatchProfile, now: datetime) -> MatchDecision:
        try:
            return self.fallback.score(user, event, now)
        except Exception:
            # Bad profile data must not break a join; a reject holds no slot.
            log.exception(f"Fallback scorer crashed for user={user.user_id} event={event.event_id}")
            return MatchDecision(score=0.0, verdict=MatchVerdict.REJECT, reasons=("scoring_unavailable",))


class MatchingDecisionEngine:
    """`decide()` always returns a decision; it never raises and never waits past the scorer deadline."""

    def __init__(self, scorer: TimeoutBoundedScorer, clock: Callable[[], datetime] = utcnow):
        self.scorer = scorer
        self.clock = clock

    async def decide(self, user: UserMatchProfile, event: EventMatchProfile) -> MatchDecision:
        started = time.perf_counter()
        decision = await self.scorer.score(user, event, self.clock())
        MATCH_LATENCY.observe(time.perf_counter() - started)
        MATCH_DECISIONS.labels(source=decision.source.value, verdict=decision.verdict.value).inc()
        log.info(
            f"Match decision user={user.user_id} event={event.event_id} "
            f"score={decision.score:.3f} verdict={decision.verdict.value} "
            f"source={decision.source.value} fallback_used={decision.fallback_used}"
        )
        return decision
