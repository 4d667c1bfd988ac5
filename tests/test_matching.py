# tests/test_matching.py
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from gatherpay.application.services.fallback_scorer import FallbackScorer, haversine_km
from gatherpay.application.services.matching_service import (
    MalformedScoreError, MatchingDecisionEngine, RemoteScorer, TimeoutBoundedScorer,
)
from gatherpay.domain.entities import MatchSource, MatchVerdict
from gatherpay.domain.value_objects import EventMatchProfile, GeoPoint, MatchDecision, UserMatchProfile

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
BERLIN = GeoPoint(52.52, 13.405)
POTSDAM = GeoPoint(52.39, 13.065)


def user_profile(**overrides) -> UserMatchProfile:
    fields = dict(user_id=1, hobby_ids=frozenset({1}), location=BERLIN, search_radius_km=10.0)
    fields.update(overrides)
    return UserMatchProfile(**fields)


def event_profile(**overrides) -> EventMatchProfile:
    fields = dict(
        event_id=7, starts_at=NOW + timedelta(days=3), capacity=10, taken=2,
        hobby_ids=frozenset({1}), location=BERLIN,
    )
    fields.update(overrides)
    return EventMatchProfile(**fields)


def ml_decision(score: float = 0.9) -> MatchDecision:
    return MatchDecision(score=score, verdict=MatchVerdict.ACCEPT, reasons=("model",),
                         source=MatchSource.ML, fallback_used=False)


class TestFallbackScorer:
    scorer = FallbackScorer(accept_threshold=0.5)

    def test_strong_match_is_accepted(self):
        decision = self.scorer.score(user_profile(), event_profile(), NOW)
        # hobby 30 + proximity 30 + within 72h 10 + spots 20
        assert decision.score == 0.9
        assert decision.accepted
        assert decision.reasons == ("same_hobby", "nearby", "spots_available")
        assert decision.source == MatchSource.FALLBACK
        assert decision.fallback_used

    def test_weak_match_is_rejected(self):
        decision = self.scorer.score(
            user_profile(hobby_ids=frozenset(), location=None), event_profile(taken=9), NOW,
        )
        assert decision.score == 0.1
        assert decision.verdict == MatchVerdict.REJECT

    def test_categories_count_as_hobbies(self):
        decision = self.scorer.score(
            user_profile(hobby_ids=frozenset({4})),
            event_profile(hobby_ids=frozenset(), category_ids=frozenset({4})),
            NOW,
        )
        assert "same_hobby" in decision.reasons

    def test_outside_radius_scores_no_proximity(self):
        assert haversine_km(BERLIN, POTSDAM) > 10
        decision = self.scorer.score(user_profile(), event_profile(location=POTSDAM), NOW)
        assert "nearby" not in decision.reasons

    def test_starting_soon_bonus(self):
        decision = self.scorer.score(user_profile(), event_profile(starts_at=NOW + timedelta(hours=5)), NOW)
        assert "starting_soon" in decision.reasons
        assert decision.score == 1.0

    def test_is_deterministic(self):
        decisions = {self.scorer.score(user_profile(), event_profile(), NOW) for _ in range(5)}
        assert len(decisions) == 1


class TestTimeoutBoundedScorer:

    def test_requires_a_fallback(self):
        with pytest.raises(TypeError):
            TimeoutBoundedScorer(fallback=None)

    @pytest.mark.asyncio
    async def test_uses_remote_decision(self):
        remote = MagicMock()
        remote.score = AsyncMock(return_value=ml_decision())
        scorer = TimeoutBoundedScorer(FallbackScorer(), remote=remote, timeout_seconds=1.0)
        decision = await scorer.score(user_profile(), event_profile(), NOW)
        assert decision.source == MatchSource.ML
        assert not decision.fallback_used

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        async def slow(*args):
            await asyncio.sleep(1)
            return ml_decision()

        remote = MagicMock()
        remote.score = slow
        scorer = TimeoutBoundedScorer(FallbackScorer(), remote=remote, timeout_seconds=0.01)
        decision = await scorer.score(user_profile(), event_profile(), NOW)
        assert decision.fallback_used
        assert decision.source == MatchSource.FALLBACK

    @pytest.mark.asyncio
    async def test_remote_error_falls_back(self):
        remote = MagicMock()
        remote.score = AsyncMock(side_effect=httpx.ConnectError("refused"))
        scorer = TimeoutBoundedScorer(FallbackScorer(), remote=remote, timeout_seconds=1.0)
        decision = await scorer.score(user_profile(), event_profile(), NOW)
        assert decision.fallback_used

    @pytest.mark.asyncio
    async def test_remote_disabled_never_calls_remote(self):
        remote = MagicMock()
        remote.score = AsyncMock(return_value=ml_decision())
        scorer = TimeoutBoundedScorer(FallbackScorer(), remote=remote, remote_enabled=False)
        decision = await scorer.score(user_profile(), event_profile(), NOW)
        assert decision.fallback_used
        remote.score.assert_not_called()

    @pytest.mark.asyncio
    async def test_crashing_fallback_rejects(self):
        fallback = FallbackScorer()
        fallback.score = MagicMock(side_effect=RuntimeError("bad profile"))
        scorer = TimeoutBoundedScorer(fallback)
        decision = await scorer.score(user_profile(), event_profile(), NOW)
        assert decision.verdict == MatchVerdict.REJECT
        assert decision.reasons == ("scoring_unavailable",)


class TestRemoteScorer:
    scorer = RemoteScorer("http://ml.local/", accept_threshold=0.6, http_client=MagicMock())

    def test_parse_uses_threshold_without_decision(self):
        assert self.scorer.parse({"score": 0.7}).accepted
        assert not self.scorer.parse({"score": 0.5}).accepted

    def test_parse_explicit_decision(self):
        decision = self.scorer.parse({"score": 0.2, "decision": "ACCEPT", "reasons": ["same_city"]})
        assert decision.accepted
        assert decision.reasons == ("same_city",)

    @pytest.mark.parametrize("payload", [
        [],
        {"score": 1.5},
        {"score": True},
        {"score": "0.5"},
        {"score": 0.5, "decision": "maybe"},
        {"score": 0.5, "reasons": "nearby"},
    ])
    def test_parse_rejects_malformed(self, payload):
        with pytest.raises(MalformedScoreError):
            self.scorer.parse(payload)

    @pytest.mark.asyncio
    async def test_score_posts_features(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/match"
            return httpx.Response(200, json={"score": 0.8, "reasons": ["model"]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        scorer = RemoteScorer("http://ml.local", http_client=client)
        decision = await scorer.score(user_profile(), event_profile())
        assert decision.score == 0.8
        assert decision.source == MatchSource.ML
        await scorer.aclose()


@pytest.mark.asyncio
async def test_decision_engine_reads_clock():
    clock = MagicMock(return_value=NOW)
    engine = MatchingDecisionEngine(TimeoutBoundedScorer(FallbackScorer(), remote_enabled=False), clock=clock)
    decision = await engine.decide(user_profile(), event_profile())
    assert decision.accepted
    clock.assert_called_once()
