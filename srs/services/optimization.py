"""
Parameter optimization and card-state cache rebuild

Both are long-running batch operations run by the job processor. They open
their own short transactions instead of holding one across the whole run.
"""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from srs.adaptive.fsrs.fsrs_algorithm import FSRSAlgorithm, FSRSCard, SchedulerConfig
from srs.adaptive.fsrs.parameter_learning import FSRSParameterLearner, LossFunction, ReviewRecord
from srs.core.config import settings
from srs.core.database import session_scope, utcnow
from srs.core.exceptions import InsufficientDataError, JobCancelledError
from srs.core.logging import log_function_call
from srs.models.spaced_repetition import LearnerParameters, ReviewLog, ReviewType
from srs.services.card_store import CardStore, review_type_value
from srs.services.parameter_store import ParameterStore, scheduler_config_for

logger = logging.getLogger(__name__)

StopCheck = Callable[[], bool]


def load_review_history(
    db: Session,
    learner_id: str,
    review_type: Union[ReviewType, str],
) -> List[ReviewRecord]:
    """A learner's full review log for one review type, oldest first"""
    rows = (
        db.query(ReviewLog)
        .filter(
            ReviewLog.learner_id == learner_id,
            ReviewLog.review_type == review_type_value(review_type),
        )
        .order_by(ReviewLog.reviewed_at, ReviewLog.id)
        .all()
    )
    return [ReviewRecord.from_review_log(row) for row in rows]


def count_reviews(db: Session, learner_id: str, review_type: Union[ReviewType, str, None] = None) -> int:
    query = db.query(func.count(ReviewLog.id)).filter(ReviewLog.learner_id == learner_id)
    if review_type is not None:
        query = query.filter(ReviewLog.review_type == review_type_value(review_type))
    return query.scalar() or 0


class ParameterOptimizationService:
    """
    Fits a learner's FSRS parameters to their review log

    Args:
        session_factory: Session factory (defaults to the process-wide one)
        learner: Parameter learner (defaults to one built from settings)
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        learner: Optional[FSRSParameterLearner] = None,
    ):
        self.session_factory = session_factory
        self.learner = learner or FSRSParameterLearner(
            loss_function=LossFunction(settings.OPTIMIZER_LOSS),
            min_reviews_for_optimization=settings.OPTIMIZER_MIN_REVIEWS,
            regularization_strength=settings.OPTIMIZER_REGULARIZATION,
            max_iterations=settings.OPTIMIZER_MAX_ITERATIONS,
            tolerance=settings.OPTIMIZER_TOLERANCE,
        )

    def optimize_parameters(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        should_stop: Optional[StopCheck] = None,
        now: Optional[datetime] = None,
    ) -> LearnerParameters:
        """
        Fit and store new parameters for one learner and review type

        The existing parameters stay untouched unless the fit succeeds.

        Raises:
            InsufficientDataError: Fewer reviews than the configured minimum
            JobCancelledError: ``should_stop`` returned True mid-fit
        """
        review_type = review_type_value(review_type)

        with session_scope(self.session_factory) as db:
            history = load_review_history(db, learner_id, review_type)

        if len(history) < self.learner.min_reviews:
            raise InsufficientDataError(
                f"Learner {learner_id} has {len(history)} {review_type} reviews, "
                f"{self.learner.min_reviews} needed for optimization",
                sample_size=len(history),
                required=self.learner.min_reviews,
            )

        logger.info(f"Optimizing FSRS parameters for learner {learner_id} ({review_type}, {len(history)} reviews)")
        result = self.learner.fit(history, should_stop=should_stop)

        metrics = dict(result.metrics)
        metrics.update({
            "initial_loss": result.initial_loss,
            "improvement_percent": result.improvement_percent,
            "iterations": result.iterations,
            "converged": result.convergence_achieved,
        })

        with session_scope(self.session_factory) as db:
            params = ParameterStore(db).replace(
                learner_id,
                review_type,
                result.optimized_params,
                loss=result.final_loss,
                sample_size=result.num_reviews_used,
                optimized_at=now or utcnow(),
                metrics=metrics,
            )

        logger.info(
            f"Learner {learner_id} parameters updated (version {params.version}): "
            f"loss {result.initial_loss:.4f} -> {result.final_loss:.4f}"
        )
        return params


class CacheRebuildService:
    """
    Regenerates card states by replaying the review log from scratch

    Cards are processed in batches, each in its own transaction with the
    batch's card rows locked, so concurrent reviews either land before the
    replay (and are part of it) or wait for it.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None, batch_size: Optional[int] = None):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.REBUILD_BATCH_SIZE

    def _reviewed_card_ids(self, db: Session, learner_id: str, review_type: str) -> List[str]:
        rows = (
            db.query(ReviewLog.card_id)
            .filter(ReviewLog.learner_id == learner_id, ReviewLog.review_type == review_type)
            .group_by(ReviewLog.card_id)
            .order_by(func.min(ReviewLog.id))
            .all()
        )
        return [row[0] for row in rows]

    @log_function_call
    def rebuild_cache(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        should_stop: Optional[StopCheck] = None,
    ) -> Dict[str, int]:
        """
        Replay every reviewed card of the learner with current parameters

        Cards with no review history are left as they are. Running it twice
        gives the same states.

        Returns:
            Summary with ``cards_rebuilt`` and ``batches``
        """
        review_type = review_type_value(review_type)

        with session_scope(self.session_factory) as db:
            card_ids = self._reviewed_card_ids(db, learner_id, review_type)
            params = ParameterStore(db).get(learner_id, review_type)
            config = scheduler_config_for(params)

        rebuilt = 0
        batches = 0
        for start in range(0, len(card_ids), self.batch_size):
            if should_stop is not None and should_stop():
                raise JobCancelledError(f"Cache rebuild stopped after {rebuilt} of {len(card_ids)} cards")
            batch = card_ids[start:start + self.batch_size]
            with session_scope(self.session_factory) as db:
                rebuilt += self._rebuild_batch(db, config, learner_id, review_type, batch)
            batches += 1

        logger.info(f"Rebuilt {rebuilt} card states for learner {learner_id} ({review_type}) in {batches} batches")
        return {"cards_rebuilt": rebuilt, "batches": batches}

    def _rebuild_batch(
        self,
        db: Session,
        config: SchedulerConfig,
        learner_id: str,
        review_type: str,
        card_ids: List[str],
    ) -> int:
        store = CardStore(db)
        states = store.list_for_cards(learner_id, card_ids, review_type, lock=True)

        # Read after locking so the log matches the rows we hold
        logs: Dict[str, List[ReviewLog]] = {}
        rows = (
            db.query(ReviewLog)
            .filter(
                ReviewLog.learner_id == learner_id,
                ReviewLog.review_type == review_type,
                ReviewLog.card_id.in_(card_ids),
            )
            .order_by(ReviewLog.reviewed_at, ReviewLog.id)
            .all()
        )
        for row in rows:
            logs.setdefault(row.card_id, []).append(row)

        algorithms: Dict[Tuple, FSRSAlgorithm] = {}

        def algorithm_for(entry: ReviewLog) -> FSRSAlgorithm:
            # Logs written before steps were stored replay with the configured steps
            learning = entry.learning_steps if entry.learning_steps is not None else config.learning_steps
            relearning = entry.relearning_steps if entry.relearning_steps is not None else config.relearning_steps
            key = (tuple(learning), tuple(relearning))
            if key not in algorithms:
                algorithms[key] = FSRSAlgorithm(
                    replace(config, learning_steps=list(learning), relearning_steps=list(relearning))
                )
            return algorithms[key]

        rebuilt = 0
        for state in states:
            history = logs.get(state.card_id)
            if not history:
                continue
            card = FSRSCard(card_id=state.card_id, learner_id=learner_id)
            for entry in history:
                card = algorithm_for(entry).review_card(card, entry.rating, entry.reviewed_at).card
            state.apply(card)
            store.save(state)
            rebuilt += 1
        return rebuilt
