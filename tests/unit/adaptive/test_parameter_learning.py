"""
Unit tests for FSRS parameter learning
"""
import random
from datetime import datetime, timedelta, timezone
from typing import List

import numpy as np
import pytest

from srs.adaptive.fsrs.fsrs_algorithm import DEFAULT_PARAMETERS, validate_parameters
from srs.adaptive.fsrs.parameter_learning import (
    FSRSParameterLearner,
    LossFunction,
    OptimizationResult,
    ReviewRecord,
    group_histories,
)
from srs.core.exceptions import InsufficientDataError, JobCancelledError

START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def synthetic_history(cards: int = 30, reviews_per_card: int = 5, seed: int = 7) -> List[ReviewRecord]:
    """Review log where longer gaps are forgotten more often"""
    rng = random.Random(seed)
    records = []
    for i in range(cards):
        when = START + timedelta(hours=i)
        records.append(ReviewRecord(card_id=f"card-{i}", rating=3, elapsed_days=0, timestamp=when))
        for _ in range(reviews_per_card - 1):
            gap = rng.randint(1, 20)
            when = when + timedelta(days=gap)
            forgot = rng.random() < min(0.8, gap / 25)
            rating = 1 if forgot else rng.choice([2, 3, 3, 4])
            records.append(ReviewRecord(card_id=f"card-{i}", rating=rating, elapsed_days=gap, timestamp=when))
    return records


@pytest.fixture
def history():
    return synthetic_history()


@pytest.fixture
def learner():
    return FSRSParameterLearner(min_reviews_for_optimization=50, max_iterations=15)


class TestReviewRecord:
    """Tests for ReviewRecord"""

    def test_recall_threshold(self):
        assert ReviewRecord("c", 1, 1, START).actual_recalled is False
        assert ReviewRecord("c", 2, 1, START).actual_recalled is True

    def test_from_dict(self):
        record = ReviewRecord.from_review_log(
            {"card_id": 42, "rating": "3", "elapsed_days": None, "reviewed_at": START}
        )
        assert record.card_id == "42"
        assert record.rating == 3
        assert record.elapsed_days == 0.0
        assert record.timestamp == START

    def test_group_histories_sorts_by_time(self):
        late = ReviewRecord("a", 3, 2, START + timedelta(days=2))
        early = ReviewRecord("a", 3, 0, START)
        other = ReviewRecord("b", 1, 0, START)

        histories = group_histories([late, other, early])

        assert histories == [[early, late], [other]]


class TestFSRSParameterLearner:
    """Tests for the maximum-likelihood fit"""

    def test_insufficient_reviews(self, learner):
        with pytest.raises(InsufficientDataError) as exc_info:
            learner.fit(synthetic_history(cards=5))
        assert exc_info.value.sample_size == 25
        assert exc_info.value.required == 50

    def test_same_day_reviews_only(self, learner):
        records = [
            ReviewRecord(f"card-{i % 10}", 3, 0, START + timedelta(minutes=i))
            for i in range(60)
        ]
        with pytest.raises(InsufficientDataError):
            learner.fit(records)

    def test_fit_returns_valid_parameters(self, learner, history):
        result = learner.fit(history)

        assert isinstance(result, OptimizationResult)
        assert len(result.optimized_params) == 17
        validate_parameters(result.optimized_params)
        for value, (low, high) in zip(result.optimized_params, learner.PARAM_BOUNDS):
            assert low <= value <= high
        assert result.num_reviews_used == len(history)

    def test_fit_does_not_worsen_loss(self, learner, history):
        result = learner.fit(history)

        assert result.final_loss <= result.initial_loss
        assert result.improvement_percent >= 0

    def test_fit_is_deterministic(self, learner, history):
        first = learner.fit(history)
        second = learner.fit(list(history))

        np.testing.assert_allclose(first.optimized_params, second.optimized_params, atol=1e-6)
        assert first.final_loss == pytest.approx(second.final_loss, abs=1e-9)

    def test_metrics(self, learner, history):
        metrics = learner.fit(history).metrics

        for key in ("rmse", "log_loss", "auc", "calibration", "predicted_retention",
                    "actual_retention", "default_log_loss"):
            assert key in metrics
        assert 0.0 <= metrics["auc"] <= 1.0
        assert 0.0 <= metrics["actual_retention"] <= 1.0

    def test_should_stop_cancels(self, learner, history):
        with pytest.raises(JobCancelledError):
            learner.fit(history, should_stop=lambda: True)

    def test_weighted_loss(self, history):
        learner = FSRSParameterLearner(
            loss_function=LossFunction.WEIGHTED_LOG_LOSS,
            max_iterations=5,
        )
        result = learner.fit(history)
        assert result.final_loss <= result.initial_loss

    def test_regularization_pulls_toward_defaults(self, history):
        loose = FSRSParameterLearner(regularization_strength=0.0, max_iterations=15).fit(history)
        tight = FSRSParameterLearner(regularization_strength=100.0, max_iterations=15).fit(history)

        def distance(params):
            return float(np.sum((np.asarray(params) - np.asarray(DEFAULT_PARAMETERS)) ** 2))

        assert distance(tight.optimized_params) <= distance(loose.optimized_params)

    def test_auc_perfect_separation(self, learner):
        predictions = np.array([0.1, 0.2, 0.8, 0.9])
        actuals = np.array([0.0, 0.0, 1.0, 1.0])
        assert learner._calculate_auc(predictions, actuals) == pytest.approx(1.0)

    def test_auc_single_class(self, learner):
        assert learner._calculate_auc(np.array([0.3, 0.7]), np.array([1.0, 1.0])) == 0.5

    def test_calibration_of_perfect_predictions(self, learner):
        predictions = np.array([0.0, 0.0, 0.999, 0.999])
        actuals = np.array([0.0, 0.0, 1.0, 1.0])
        assert learner._calculate_calibration(predictions, actuals) == pytest.approx(0.0, abs=1e-2)

    def test_result_to_dict(self, learner, history):
        data = learner.fit(history).to_dict()
        assert set(data) >= {"optimized_params", "initial_loss", "final_loss", "iterations", "metrics"}
