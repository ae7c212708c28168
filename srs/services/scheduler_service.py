"""
Scheduler Service
Entry point for the API/CLI layer: every operation takes the learner and
scope explicitly and runs in its own transaction.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import case, func
from sqlalchemy.orm import sessionmaker

from srs.adaptive.fsrs.fsrs_algorithm import FSRSAlgorithm, Rating, State, retrievability
from srs.core.database import session_scope, utcnow
from srs.core.exceptions import InvalidParameterError
from srs.models.jobs import OptimizationJob
from srs.models.spaced_repetition import CardState, ReviewLog, ReviewType
from srs.schemas.session import ExerciseType, ProgressSnapshot, QueueConfig, QueueItem, parse_progress
from srs.services.card_pool import CardPoolProvider, DeckCardPoolProvider
from srs.services.card_store import CardStore, review_type_value
from srs.services.jobs import JobService
from srs.services.parameter_store import ParameterStore, scheduler_config_for
from srs.services.queue_builder import QueueBuilder
from srs.services.review_recorder import record_review_with_retry
from srs.services.session_progress import CardDataLoader, SessionService

logger = logging.getLogger(__name__)

# Cards at least this likely to be recalled are confident enough for listening
LISTENING_RETRIEVABILITY_THRESHOLD = 0.36
LISTENING_LONG_INTERVAL_DAYS = 30


class SchedulerService:
    """
    Scheduling operations exposed to the surrounding application

    Args:
        session_factory: Session factory (defaults to the process-wide one)
        card_pool: Deck resolver for sessions (defaults to granted deck cards)
        card_data_loader: Builds the card payload shown to the learner
        jobs: Job service (defaults to one on the same session factory)
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        card_pool: Optional[CardPoolProvider] = None,
        card_data_loader: Optional[CardDataLoader] = None,
        jobs: Optional[JobService] = None,
    ):
        self.session_factory = session_factory
        self.card_pool = card_pool
        self.card_data_loader = card_data_loader
        self.jobs = jobs or JobService(session_factory)

    def _sessions(self, db) -> SessionService:
        return SessionService(db, self.card_pool or DeckCardPoolProvider(db), self.card_data_loader)

    # ==================== Reviews and queues ====================

    def record_review(
        self,
        learner_id: str,
        card_id: str,
        rating: Union[int, Rating],
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        response_time_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CardState:
        """Record a review outside any session (retried on conflicts)"""
        return record_review_with_retry(
            learner_id,
            card_id,
            rating,
            review_type=review_type,
            response_time_ms=response_time_ms,
            now=now,
            session_factory=self.session_factory,
        )

    def build_queue(
        self,
        learner_id: str,
        card_pool_ids: Sequence[str],
        config: Optional[QueueConfig] = None,
        now: Optional[datetime] = None,
    ) -> List[QueueItem]:
        with session_scope(self.session_factory) as db:
            return QueueBuilder(db).build_queue(learner_id, card_pool_ids, config, now)

    def refresh_queue(self, session_id: str, now: Optional[datetime] = None) -> List[QueueItem]:
        """Recompute a session's queue from its frozen scope without changing the session"""
        with session_scope(self.session_factory) as db:
            session = self._sessions(db).get_session(session_id)
            progress = parse_progress(session.progress)
            return QueueBuilder(db).refresh_queue(session.learner_id, progress, now)

    def get_due_cards(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Reviewed cards due now, most overdue first, with current retrievability"""
        now = now or utcnow()
        with session_scope(self.session_factory) as db:
            states = CardStore(db).list_due(learner_id, now, review_type, limit=limit)
            return [self._card_summary(state, now) for state in states]

    def preview_intervals(
        self,
        learner_id: str,
        card_id: str,
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        now: Optional[datetime] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Predicted outcome of each rating, for labelling rating buttons"""
        now = now or utcnow()
        with session_scope(self.session_factory) as db:
            state = CardStore(db).require(learner_id, card_id, review_type)
            params = ParameterStore(db).get(learner_id, review_type)
            algorithm = FSRSAlgorithm(scheduler_config_for(params))
            predictions = algorithm.get_next_states(state.to_fsrs_card(), now)
        return {rating.name: outcome for rating, outcome in predictions.items()}

    # ==================== Sessions ====================

    def start_session(
        self,
        learner_id: str,
        deck_id: str,
        exercise_type: Union[ExerciseType, str] = ExerciseType.VOCABULARY_DECK,
        config: Optional[QueueConfig] = None,
        now: Optional[datetime] = None,
    ) -> ProgressSnapshot:
        now = now or utcnow()
        with session_scope(self.session_factory) as db:
            session = self._sessions(db).start_session(learner_id, deck_id, exercise_type, config, now)
            return ProgressSnapshot.from_progress(
                session.id, parse_progress(session.progress), now, session.version
            )

    def submit_session_action(
        self,
        session_id: str,
        action: Any,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> ProgressSnapshot:
        """
        Apply one session action in its own transaction

        ConcurrencyError is left to the caller: the client should refetch the
        session before retrying, since the other action may have moved it on.
        """
        with session_scope(self.session_factory) as db:
            return self._sessions(db).submit_action(session_id, action, now, expected_version)

    def get_session_progress(self, session_id: str, now: Optional[datetime] = None) -> ProgressSnapshot:
        with session_scope(self.session_factory) as db:
            return self._sessions(db).get_progress(session_id, now)

    # ==================== Jobs ====================

    def request_optimization(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        owner_id: Optional[str] = None,
    ) -> OptimizationJob:
        return self.jobs.request_optimization(learner_id, review_type, owner_id)

    def request_cache_rebuild(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        owner_id: Optional[str] = None,
    ) -> OptimizationJob:
        return self.jobs.request_cache_rebuild(learner_id, review_type, owner_id)

    def get_job(self, job_id: int) -> OptimizationJob:
        return self.jobs.get_job(job_id)

    def cancel_job(self, job_id: int) -> OptimizationJob:
        """Cancel a PENDING job at once; a RUNNING job stops at its next checkpoint"""
        return self.jobs.cancel_job(job_id)

    # ==================== Statistics ====================

    def get_stats(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str, None] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Aggregate scheduling statistics for a learner

        Returns:
            Counts by state, cards due now, review totals, observed retention
            and the parameter record in use
        """
        now = now or utcnow()
        with session_scope(self.session_factory) as db:
            store = CardStore(db)
            counts = store.count_by_state(learner_id, review_type)

            due_query = db.query(func.count(CardState.id)).filter(
                CardState.learner_id == learner_id,
                CardState.state != State.NEW.value,
                CardState.due <= now,
            )
            log_query = db.query(
                func.count(ReviewLog.id),
                func.sum(case((ReviewLog.rating > int(Rating.AGAIN), 1), else_=0)),
            ).filter(ReviewLog.learner_id == learner_id)
            if review_type is not None:
                due_query = due_query.filter(CardState.review_type == review_type_value(review_type))
                log_query = log_query.filter(ReviewLog.review_type == review_type_value(review_type))

            due_now = due_query.scalar() or 0
            total_reviews, recalled = log_query.one()
            total_reviews = total_reviews or 0
            recalled = int(recalled or 0)

            params = None
            if review_type is not None:
                record = ParameterStore(db).get(learner_id, review_type)
                params = record.to_dict() if record else None

        return {
            "learner_id": learner_id,
            "review_type": review_type_value(review_type) if review_type is not None else None,
            "total_cards": sum(counts.values()),
            "by_state": counts,
            "due_now": due_now,
            "total_reviews": total_reviews,
            "retention_rate": recalled / total_reviews if total_reviews else None,
            "parameters": params,
        }

    def get_listening_candidates(
        self,
        learner_id: str,
        now: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        """
        Vocabulary cards known well enough for listening practice

        REVIEW cards whose current retrievability is above 0.36 or that are
        not due for another 30 days, most confident first.
        """
        now = now or utcnow()
        long_horizon = now + timedelta(days=LISTENING_LONG_INTERVAL_DAYS)
        with session_scope(self.session_factory) as db:
            states = CardStore(db).list_by_state(learner_id, [State.REVIEW], ReviewType.VOCABULARY)
            summaries = [
                self._card_summary(state, now)
                for state in states
                if self._current_retrievability(state, now) > LISTENING_RETRIEVABILITY_THRESHOLD
                or (state.due is not None and state.due > long_horizon)
            ]
        summaries.sort(key=lambda s: (-s["retrievability"], s["card_id"]))
        return summaries[:limit]

    def suggest_listening_count(
        self,
        learner_id: str,
        listening_threshold: float = LISTENING_RETRIEVABILITY_THRESHOLD,
        vocab_threshold: float = LISTENING_RETRIEVABILITY_THRESHOLD,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Largest listening section size that stays within well-known vocabulary

        Listening cards the learner already hears reliably (retrievability above
        ``listening_threshold``) are ranked by the retrievability of the same
        card's vocabulary state; the result is the length of the leading run
        whose vocabulary retrievability is at least ``vocab_threshold``.
        """
        for name, value in (("listening_threshold", listening_threshold), ("vocab_threshold", vocab_threshold)):
            if not 0 <= value < 1:
                raise InvalidParameterError(f"{name} must be in [0, 1), got {value}")
        now = now or utcnow()

        with session_scope(self.session_factory) as db:
            store = CardStore(db)
            listening = [
                state
                for state in store.list_by_state(
                    learner_id, [State.LEARNING, State.REVIEW, State.RELEARNING], ReviewType.LISTENING
                )
                if state.stability > 0
                and self._current_retrievability(state, now) > listening_threshold
            ]
            if not listening:
                return 0
            vocab = {
                state.card_id: self._current_retrievability(state, now)
                for state in store.list_for_cards(
                    learner_id, [s.card_id for s in listening], ReviewType.VOCABULARY
                )
            }

        ranked = sorted((vocab.get(state.card_id, 0.0) for state in listening), reverse=True)
        suggested = 0
        for r in ranked:
            if r < vocab_threshold:
                break
            suggested += 1
        logger.debug(f"Suggested listening count for learner {learner_id}: {suggested} of {len(listening)}")
        return suggested

    @staticmethod
    def _current_retrievability(state: CardState, now: datetime) -> float:
        if state.state == State.NEW.value or state.last_reviewed_at is None:
            return 0.0
        elapsed = max(0.0, (now - state.last_reviewed_at).total_seconds() / 86400)
        return retrievability(elapsed, state.stability)

    def _card_summary(self, state: CardState, now: datetime) -> Dict[str, Any]:
        summary = state.to_fsrs_card().to_dict()
        summary["review_type"] = state.review_type
        summary["deck_id"] = state.deck_id
        summary["retrievability"] = self._current_retrievability(state, now)
        return summary
