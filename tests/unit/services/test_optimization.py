"""
Tests for parameter optimization and cache rebuilds
"""
import random
from datetime import timedelta

import pytest

from conftest import LEARNER, NOW, CardFactory
from srs.adaptive.fsrs.fsrs_algorithm import DEFAULT_PARAMETERS
from srs.adaptive.fsrs.parameter_learning import FSRSParameterLearner, LossFunction
from srs.core.config import settings
from srs.core.database import session_scope
from srs.core.exceptions import InsufficientDataError, JobCancelledError
from srs.models.spaced_repetition import CardState, LearnerParameters, ReviewLog, ReviewType
from srs.services.optimization import (
    CacheRebuildService,
    ParameterOptimizationService,
    count_reviews,
    load_review_history,
)
from srs.services.review_recorder import ReviewRecorder

CARDS = 20
REVIEWS_PER_CARD = 4


@pytest.fixture
def seeded(session_factory):
    """20 cards reviewed 4 times each over a few weeks"""
    rng = random.Random(3)
    with session_scope(session_factory) as db:
        factory = CardFactory(db)
        recorder = ReviewRecorder(db)
        for i in range(CARDS):
            card_id = f"card-{i}"
            factory.create(card_id)
            when = NOW + timedelta(hours=i)
            for _ in range(REVIEWS_PER_CARD):
                rating = 1 if rng.random() < 0.25 else rng.choice([2, 3, 4])
                recorder.record_review(LEARNER, card_id, rating, now=when)
                when = when + timedelta(days=rng.randint(1, 12))
    return session_factory


def snapshot_states(session_factory):
    with session_scope(session_factory) as db:
        return {
            s.card_id: (s.state, round(s.stability, 9), round(s.difficulty, 9), s.due, s.reps, s.lapses)
            for s in db.query(CardState)
        }


@pytest.fixture
def learner():
    return FSRSParameterLearner(min_reviews_for_optimization=40, max_iterations=5)


class TestReviewHistory:
    """Tests for reading the review log"""

    def test_load_in_time_order(self, seeded):
        with session_scope(seeded) as db:
            history = load_review_history(db, LEARNER, ReviewType.VOCABULARY)
            assert len(history) == CARDS * REVIEWS_PER_CARD
            assert count_reviews(db, LEARNER) == CARDS * REVIEWS_PER_CARD
            assert count_reviews(db, LEARNER, ReviewType.LISTENING) == 0

        timestamps = [record.timestamp for record in history]
        assert timestamps == sorted(timestamps)


class TestParameterOptimizationService:
    """Tests for fitting and storing learner parameters"""

    def test_loss_function_from_settings(self, monkeypatch, session_factory):
        monkeypatch.setattr(settings, "OPTIMIZER_LOSS", "weighted_log_loss")

        service = ParameterOptimizationService(session_factory)

        assert service.learner.loss_function == LossFunction.WEIGHTED_LOG_LOSS
        explicit = ParameterOptimizationService(session_factory, learner=FSRSParameterLearner())
        assert explicit.learner.loss_function == LossFunction.LOG_LOSS

    def test_optimize_replaces_parameters(self, seeded, learner):
        service = ParameterOptimizationService(seeded, learner=learner)
        with session_scope(seeded) as db:
            before = db.query(LearnerParameters).one().version

        params = service.optimize_parameters(LEARNER, now=NOW + timedelta(days=60))

        assert params.version == before + 1
        assert params.sample_size == CARDS * REVIEWS_PER_CARD
        assert params.last_optimized_at == NOW + timedelta(days=60)
        assert len(params.w) == 17
        assert params.loss is not None
        assert params.metrics["iterations"] >= 0
        assert "log_loss" in params.metrics
        assert params.is_default is False

    def test_insufficient_history_leaves_parameters(self, seeded):
        service = ParameterOptimizationService(
            seeded, learner=FSRSParameterLearner(min_reviews_for_optimization=500)
        )

        with pytest.raises(InsufficientDataError) as exc_info:
            service.optimize_parameters(LEARNER)

        assert exc_info.value.sample_size == CARDS * REVIEWS_PER_CARD
        with session_scope(seeded) as db:
            params = db.query(LearnerParameters).one()
            assert params.w == list(DEFAULT_PARAMETERS)
            assert params.last_optimized_at is None

    def test_cancelled_fit_leaves_parameters(self, seeded, learner):
        service = ParameterOptimizationService(seeded, learner=learner)

        with pytest.raises(JobCancelledError):
            service.optimize_parameters(LEARNER, should_stop=lambda: True)

        with session_scope(seeded) as db:
            assert db.query(LearnerParameters).one().is_default

    def test_idempotent(self, seeded, learner):
        service = ParameterOptimizationService(seeded, learner=learner)

        first = list(service.optimize_parameters(LEARNER).w)
        second = list(service.optimize_parameters(LEARNER).w)

        assert second == pytest.approx(first, abs=1e-6)

    def test_learner_without_reviews(self, session_factory, learner):
        with pytest.raises(InsufficientDataError):
            ParameterOptimizationService(session_factory, learner=learner).optimize_parameters("nobody")


class TestCacheRebuildService:
    """Tests for replaying the review log into card state"""

    def test_rebuild_matches_recorded_state(self, seeded):
        expected = snapshot_states(seeded)
        with session_scope(seeded) as db:
            for state in db.query(CardState):
                state.stability = 999.0
                state.reps = 0

        summary = CacheRebuildService(seeded, batch_size=6).rebuild_cache(LEARNER)

        assert summary == {"cards_rebuilt": CARDS, "batches": 4}
        assert snapshot_states(seeded) == expected

    def test_rebuild_twice_is_stable(self, seeded):
        service = CacheRebuildService(seeded)
        service.rebuild_cache(LEARNER)
        first = snapshot_states(seeded)

        service.rebuild_cache(LEARNER)

        assert snapshot_states(seeded) == first

    def test_unreviewed_cards_untouched(self, seeded):
        with session_scope(seeded) as db:
            CardFactory(db).create("untouched")

        summary = CacheRebuildService(seeded).rebuild_cache(LEARNER)

        assert summary["cards_rebuilt"] == CARDS
        with session_scope(seeded) as db:
            state = db.query(CardState).filter(CardState.card_id == "untouched").one()
            assert state.state == "NEW"

    def test_stops_between_batches(self, seeded):
        calls = {"n": 0}

        def stop_after_first_batch():
            calls["n"] += 1
            return calls["n"] > 1

        with pytest.raises(JobCancelledError):
            CacheRebuildService(seeded, batch_size=5).rebuild_cache(LEARNER, should_stop=stop_after_first_batch)

    def test_uses_optimized_parameters(self, seeded):
        with session_scope(seeded) as db:
            params = db.query(LearnerParameters).one()
            w = list(params.w)
            w[0], w[1], w[2], w[3] = 1.0, 2.0, 6.0, 20.0
            params.w = w

        before = snapshot_states(seeded)
        CacheRebuildService(seeded).rebuild_cache(LEARNER)

        assert snapshot_states(seeded) != before

    def test_replays_steps_recorded_with_review(self, session_factory):
        with session_scope(session_factory) as db:
            CardFactory(db).create("c1")
            ReviewRecorder(db, learning_steps=["1h", "1d"]).record_review(LEARNER, "c1", 1, now=NOW)

        with session_scope(session_factory) as db:
            log = db.query(ReviewLog).one()
            assert log.learning_steps == ["1h", "1d"]
            assert log.relearning_steps == ["10m"]
            db.query(CardState).one().due = NOW

        CacheRebuildService(session_factory).rebuild_cache(LEARNER)

        with session_scope(session_factory) as db:
            state = db.query(CardState).one()
            assert state.state == "LEARNING"
            assert state.due == NOW + timedelta(hours=1)
