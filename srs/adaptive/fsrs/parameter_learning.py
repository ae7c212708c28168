"""
FSRS Parameter Learning

Fits a learner's 17 FSRS coefficients to their own review history by
maximum likelihood: every review that follows an earlier one on the same
card is a Bernoulli observation (recalled or not) whose predicted
probability is the model's retrievability at that moment.

Methods:
1. Replay each card's ordered history through the memory model
2. Binary cross-entropy against observed recall, L2-regularised toward
   the default parameters
3. Bounded L-BFGS-B (scipy), always started from the defaults so the fit
   is deterministic for a given log

References:
- FSRS-4.5: https://github.com/open-spaced-repetition/fsrs4anki
- Settles & Meeder, 2016: A Trainable Spaced Repetition Model
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from datetime import datetime
from enum import Enum
import logging
import math

import numpy as np
from scipy import optimize, stats

from srs.core.exceptions import InsufficientDataError, JobCancelledError
from .fsrs_algorithm import (
    DEFAULT_PARAMETERS,
    PARAMETER_COUNT,
    Rating,
    init_difficulty,
    init_stability,
    next_difficulty,
    next_forget_stability,
    next_recall_stability,
    retrievability,
)

logger = logging.getLogger(__name__)


@dataclass
class ReviewRecord:
    """A single review record for parameter learning"""
    card_id: str
    rating: int  # 1-4
    elapsed_days: float
    timestamp: datetime

    @property
    def actual_recalled(self) -> bool:
        return self.rating >= Rating.HARD

    @classmethod
    def from_review_log(cls, log: Any) -> "ReviewRecord":
        """Create from a ReviewLog row or an equivalent dictionary"""
        if isinstance(log, dict):
            return cls(
                card_id=str(log["card_id"]),
                rating=int(log["rating"]),
                elapsed_days=float(log.get("elapsed_days") or 0),
                timestamp=log["reviewed_at"],
            )
        return cls(
            card_id=str(log.card_id),
            rating=int(log.rating),
            elapsed_days=float(log.elapsed_days or 0),
            timestamp=log.reviewed_at,
        )


@dataclass
class OptimizationResult:
    """Result of parameter optimization"""
    optimized_params: List[float]
    initial_loss: float
    final_loss: float
    improvement_percent: float
    num_reviews_used: int
    convergence_achieved: bool
    iterations: int
    metrics: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "optimized_params": list(self.optimized_params),
            "initial_loss": self.initial_loss,
            "final_loss": self.final_loss,
            "improvement_percent": self.improvement_percent,
            "num_reviews_used": self.num_reviews_used,
            "convergence_achieved": self.convergence_achieved,
            "iterations": self.iterations,
            "metrics": dict(self.metrics),
        }


class LossFunction(str, Enum):
    """Loss functions for parameter optimization"""
    LOG_LOSS = "log_loss"  # Binary cross-entropy
    WEIGHTED_LOG_LOSS = "weighted_log_loss"  # Weight recent reviews more


def group_histories(reviews: Iterable[ReviewRecord]) -> List[List[ReviewRecord]]:
    """
    Split a review log into per-card histories ordered by timestamp.

    Cards are returned in order of first appearance; ties on timestamp keep
    log order.
    """
    histories: Dict[str, List[ReviewRecord]] = {}
    for review in reviews:
        histories.setdefault(review.card_id, []).append(review)
    return [sorted(h, key=lambda r: r.timestamp) for h in histories.values()]


class FSRSParameterLearner:
    """
    Learns FSRS parameters from a learner's review history
    """

    # Parameter bounds for optimization (each contains the default)
    PARAM_BOUNDS: Tuple[Tuple[float, float], ...] = (
        (0.1, 5.0),     # w[0]: Initial stability AGAIN
        (0.1, 10.0),    # w[1]: Initial stability HARD
        (0.5, 20.0),    # w[2]: Initial stability GOOD
        (1.0, 100.0),   # w[3]: Initial stability EASY
        (1.0, 10.0),    # w[4]: Initial difficulty
        (0.1, 4.0),     # w[5]: Initial difficulty slope
        (0.1, 4.0),     # w[6]: Difficulty change
        (0.0, 0.75),    # w[7]: Mean reversion
        (0.0, 4.5),     # w[8]: Recall stability growth
        (0.0, 0.8),     # w[9]: Stability saturation
        (0.01, 3.5),    # w[10]: Retrievability gain on recall
        (0.1, 5.0),     # w[11]: Post-lapse scale
        (0.01, 0.25),   # w[12]: Post-lapse difficulty exponent
        (0.01, 0.9),    # w[13]: Post-lapse stability exponent
        (0.01, 4.0),    # w[14]: Retrievability gain on lapse
        (0.0, 1.0),     # w[15]: Hard penalty
        (1.0, 6.0),     # w[16]: Easy bonus
    )

    def __init__(
        self,
        loss_function: LossFunction = LossFunction.LOG_LOSS,
        min_reviews_for_optimization: int = 50,
        regularization_strength: float = 0.01,
        max_iterations: int = 100,
        tolerance: float = 1e-6,
    ):
        self.loss_function = loss_function
        self.min_reviews = min_reviews_for_optimization
        self.regularization = regularization_strength
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    def _replay(
        self,
        w: Sequence[float],
        histories: List[List[ReviewRecord]],
    ) -> Tuple[List[float], List[float], List[int]]:
        """
        Replay histories under ``w``.

        Returns:
            (predicted recall, observed recall, position in the combined log)
            for every review made at least one day after the previous one
        """
        predictions: List[float] = []
        actuals: List[float] = []
        positions: List[int] = []
        position = 0

        for history in histories:
            stability: Optional[float] = None
            difficulty = 0.0
            for review in history:
                rating = Rating(review.rating)
                if stability is None:
                    stability = init_stability(rating, w)
                    difficulty = init_difficulty(rating, w)
                else:
                    r = retrievability(review.elapsed_days, stability)
                    if review.elapsed_days > 0:
                        predictions.append(r)
                        actuals.append(1.0 if review.actual_recalled else 0.0)
                        positions.append(position)
                    if rating == Rating.AGAIN:
                        stability = next_forget_stability(stability, difficulty, r, w)
                    else:
                        stability = next_recall_stability(stability, difficulty, r, rating, w)
                    difficulty = next_difficulty(difficulty, rating, w)
                position += 1

        return predictions, actuals, positions

    def _calculate_review_weights(self, positions: List[int], total: int) -> np.ndarray:
        """Recency weights from 0.5 (oldest) to 1.0 (newest)"""
        if self.loss_function != LossFunction.WEIGHTED_LOG_LOSS or total == 0:
            return np.ones(len(positions))
        return 0.5 + 0.5 * (np.asarray(positions, dtype=float) / total)

    def _compute_loss(
        self,
        w: Sequence[float],
        histories: List[List[ReviewRecord]],
        total: int,
    ) -> float:
        """
        Compute loss for given parameters on review data

        Returns:
            Loss value (lower is better)
        """
        predictions, actuals, positions = self._replay(w, histories)
        if not predictions:
            return float("inf")

        eps = 1e-7  # Small constant to avoid log(0)
        p = np.clip(np.asarray(predictions), eps, 1 - eps)
        y = np.asarray(actuals)
        weights = self._calculate_review_weights(positions, total)

        losses = -(y * np.log(p) + (1 - y) * np.log(1 - p))
        avg_loss = float(np.sum(losses * weights) / np.sum(weights))

        # L2 regularization toward default parameters
        if self.regularization > 0:
            reg_loss = sum(
                (w[i] - DEFAULT_PARAMETERS[i]) ** 2 / (high - low) ** 2
                for i, (low, high) in enumerate(self.PARAM_BOUNDS)
            )
            avg_loss += self.regularization * reg_loss / PARAMETER_COUNT

        return avg_loss

    def _clip_params(self, vector: Sequence[float]) -> Tuple[float, ...]:
        """Clip parameters to valid bounds"""
        return tuple(
            float(min(high, max(low, value)))
            for value, (low, high) in zip(vector, self.PARAM_BOUNDS)
        )

    def fit(
        self,
        reviews: Sequence[ReviewRecord],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> OptimizationResult:
        """
        Fit parameters to a review log

        Args:
            reviews: Review log (any order; grouped and sorted per card)
            should_stop: Polled once per iteration; returning True aborts the
                fit with JobCancelledError

        Returns:
            Optimization result with fitted parameters
        """
        if len(reviews) < self.min_reviews:
            raise InsufficientDataError(
                f"Need at least {self.min_reviews} reviews to optimize, got {len(reviews)}",
                sample_size=len(reviews),
                required=self.min_reviews,
            )

        histories = group_histories(reviews)
        total = len(reviews)

        initial_params = DEFAULT_PARAMETERS
        initial_loss = self._compute_loss(initial_params, histories, total)
        if not math.isfinite(initial_loss):
            raise InsufficientDataError(
                "Review log has no repeat reviews spaced a day or more apart",
                sample_size=len(reviews),
                required=self.min_reviews,
            )

        def objective(vector: np.ndarray) -> float:
            return self._compute_loss(self._clip_params(vector), histories, total)

        iterations = 0

        def callback(xk: np.ndarray) -> None:
            nonlocal iterations
            iterations += 1
            if should_stop is not None and should_stop():
                raise JobCancelledError(f"Optimization stopped after {iterations} iterations")

        result = optimize.minimize(
            objective,
            np.asarray(initial_params, dtype=float),
            method="L-BFGS-B",
            bounds=self.PARAM_BOUNDS,
            callback=callback,
            options={"maxiter": self.max_iterations, "ftol": self.tolerance},
        )

        best_params = self._clip_params(result.x)
        best_loss = self._compute_loss(best_params, histories, total)
        if best_loss > initial_loss:
            best_params, best_loss = initial_params, initial_loss

        improvement = ((initial_loss - best_loss) / initial_loss * 100) if initial_loss > 0 else 0.0
        metrics = self._calculate_metrics(best_params, histories)
        default_metrics = self._calculate_metrics(initial_params, histories)
        metrics["default_log_loss"] = default_metrics["log_loss"]

        logger.info(
            f"FSRS fit on {len(reviews)} reviews: loss {initial_loss:.4f} -> {best_loss:.4f} "
            f"({result.nit} iterations, converged={result.success})"
        )

        return OptimizationResult(
            optimized_params=list(best_params),
            initial_loss=initial_loss,
            final_loss=best_loss,
            improvement_percent=improvement,
            num_reviews_used=len(reviews),
            convergence_achieved=bool(result.success),
            iterations=int(result.nit),
            metrics=metrics,
        )

    def _calculate_metrics(
        self,
        w: Sequence[float],
        histories: List[List[ReviewRecord]],
    ) -> Dict[str, float]:
        """Calculate evaluation metrics for parameters"""
        predictions, actuals, _ = self._replay(w, histories)
        if not predictions:
            return {}

        p = np.asarray(predictions)
        y = np.asarray(actuals)
        eps = 1e-7
        clipped = np.clip(p, eps, 1 - eps)

        return {
            "rmse": float(np.sqrt(np.mean((p - y) ** 2))),
            "log_loss": float(-np.mean(y * np.log(clipped) + (1 - y) * np.log(1 - clipped))),
            "auc": self._calculate_auc(p, y),
            "calibration": self._calculate_calibration(p, y),
            "predicted_retention": float(np.mean(p)),
            "actual_retention": float(np.mean(y)),
        }

    def _calculate_auc(self, predictions: np.ndarray, actuals: np.ndarray) -> float:
        """AUC-ROC via the Mann-Whitney rank statistic"""
        n_pos = int(np.sum(actuals == 1.0))
        n_neg = len(actuals) - n_pos
        if n_pos == 0 or n_neg == 0:
            return 0.5
        ranks = stats.rankdata(predictions)
        rank_sum = float(np.sum(ranks[actuals == 1.0]))
        return (rank_sum - n_pos * (n_pos + 1) / 2) / (n_pos * n_neg)

    def _calculate_calibration(
        self,
        predictions: np.ndarray,
        actuals: np.ndarray,
        n_bins: int = 10
    ) -> float:
        """Calculate calibration error (expected calibration error)"""
        bins = np.minimum((predictions * n_bins).astype(int), n_bins - 1)
        ece = 0.0
        for b in range(n_bins):
            mask = bins == b
            if not np.any(mask):
                continue
            ece += np.sum(mask) * abs(float(np.mean(predictions[mask])) - float(np.mean(actuals[mask])))
        return float(ece / len(predictions))
