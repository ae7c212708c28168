"""
Review Recorder

Applies one rating to a learner's card: runs the scheduler, writes the new
card state and appends the review log entry in the caller's transaction.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from srs.adaptive.fsrs.fsrs_algorithm import FSRSAlgorithm, Rating, ReviewOutcome, SchedulerConfig, parse_rating
from srs.core.config import settings
from srs.core.database import session_scope, translate_conflicts, utcnow
from srs.core.exceptions import retry_on_conflict
from srs.models.spaced_repetition import CardState, ReviewLog, ReviewType
from srs.services.card_store import CardStore, review_type_value
from srs.services.parameter_store import ParameterStore, scheduler_config_for

logger = logging.getLogger(__name__)


class ReviewRecorder:
    """
    Records reviews within an open database session

    Args:
        db: Session whose transaction the writes join (never committed here)
        learning_steps: Override of the configured learning steps
        relearning_steps: Override of the configured relearning steps
    """

    def __init__(
        self,
        db: Session,
        learning_steps: Optional[List[str]] = None,
        relearning_steps: Optional[List[str]] = None,
    ):
        self.db = db
        self.cards = CardStore(db)
        self.parameters = ParameterStore(db)
        self.learning_steps = learning_steps
        self.relearning_steps = relearning_steps

    def algorithm_for(self, learner_id: str, review_type: Union[ReviewType, str]) -> FSRSAlgorithm:
        """Scheduler configured with the learner's parameters (created on first use)"""
        params = self.parameters.get_or_create(learner_id, review_type)
        return FSRSAlgorithm(
            scheduler_config_for(
                params,
                learning_steps=self.learning_steps,
                relearning_steps=self.relearning_steps,
            )
        )

    def record_review(
        self,
        learner_id: str,
        card_id: str,
        rating: Union[int, Rating],
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        session_id: Optional[str] = None,
        response_time_ms: Optional[int] = None,
        now: Optional[datetime] = None,
        create_missing: bool = False,
    ) -> CardState:
        """
        Record a review and reschedule the card

        Args:
            learner_id: Learner ID
            card_id: Card ID
            rating: 1-4 (AGAIN, HARD, GOOD, EASY)
            review_type: Card pool the review belongs to
            session_id: Session the review was made in, if any
            response_time_ms: Time the learner took to answer
            now: Review time (defaults to current UTC time)
            create_missing: Treat a missing card state as NEW instead of failing;
                only for callers that already checked the learner's access

        Returns:
            The updated card state

        Raises:
            InvalidRatingError: Rating outside 1-4
            NotFoundError: Learner has no state for the card
            ConcurrencyError: Another transaction changed the card meanwhile
        """
        grade = parse_rating(rating)
        now = now or utcnow()
        review_type = review_type_value(review_type)

        state = self.cards.get(learner_id, card_id, review_type, lock=True)
        if state is None and create_missing:
            state = self.cards.grant(learner_id, [card_id], review_type=review_type)[0]
        elif state is None:
            state = self.cards.require(learner_id, card_id, review_type)

        algorithm = self.algorithm_for(learner_id, review_type)
        outcome = algorithm.review_card(state.to_fsrs_card(), grade, now)

        state.apply(outcome.card)
        self.cards.save(state)
        self._append_log(outcome, review_type, session_id, response_time_ms, algorithm.config)

        logger.info(
            f"Review recorded: learner={learner_id} card={card_id} rating={grade.name} "
            f"{outcome.state_before.value}->{outcome.card.state.value} due={outcome.card.due.isoformat()}"
        )
        return state

    def _append_log(
        self,
        outcome: ReviewOutcome,
        review_type: str,
        session_id: Optional[str],
        response_time_ms: Optional[int],
        config: SchedulerConfig,
    ) -> ReviewLog:
        entry = ReviewLog.from_outcome(
            outcome,
            review_type,
            session_id=session_id,
            response_time_ms=response_time_ms,
            learning_steps=config.learning_steps,
            relearning_steps=config.relearning_steps,
        )
        self.db.add(entry)
        with translate_conflicts(f"review log of card {outcome.card.card_id}"):
            self.db.flush()
        return entry


def record_review_with_retry(
    learner_id: str,
    card_id: str,
    rating: Union[int, Rating],
    review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
    session_id: Optional[str] = None,
    response_time_ms: Optional[int] = None,
    now: Optional[datetime] = None,
    session_factory: Optional[sessionmaker] = None,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> CardState:
    """
    Record a review in its own transaction, retrying on ConcurrencyError

    Each attempt re-reads the card, so a retry applies the rating on top of
    whatever the competing review wrote.
    """
    grade = parse_rating(rating)

    def attempt() -> CardState:
        with session_scope(session_factory) as db:
            return ReviewRecorder(db).record_review(
                learner_id,
                card_id,
                grade,
                review_type=review_type,
                session_id=session_id,
                response_time_ms=response_time_ms,
                now=now,
            )

    return retry_on_conflict(
        attempt,
        attempts=attempts or settings.REVIEW_MAX_ATTEMPTS,
        base_delay=settings.REVIEW_RETRY_BASE_DELAY if base_delay is None else base_delay,
        sleep=sleep,
    )
