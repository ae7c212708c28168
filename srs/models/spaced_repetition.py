"""
Spaced Repetition Models
Database models for FSRS card state, review history and learner parameters
"""
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    event,
)

from srs.adaptive.fsrs.fsrs_algorithm import (
    DEFAULT_PARAMETERS,
    PARAMETERS_VERSION,
    FSRSCard,
    ReviewOutcome,
    State,
)
from srs.core.database import Base, UTCDateTime, utcnow
from srs.core.exceptions import SchedulerError


class ReviewType(str, Enum):
    """Card pools scheduled independently for the same learner"""
    VOCABULARY = "VOCABULARY"
    LISTENING = "LISTENING"


class CardState(Base):
    """
    Current FSRS state of one learner x card pair (per review type)

    Exactly one row per relationship; ``state == NEW`` iff ``reps == 0``.
    """

    __tablename__ = "card_states"

    id = Column(Integer, primary_key=True)
    learner_id = Column(String(64), nullable=False, index=True)
    card_id = Column(String(64), nullable=False)
    deck_id = Column(String(64), index=True)  # Deck the card was granted through
    review_type = Column(String(16), nullable=False, default=ReviewType.VOCABULARY.value)

    # FSRS Parameters
    state = Column(String(16), nullable=False, default=State.NEW.value)
    stability = Column(Float, nullable=False, default=0.0)  # Memory stability (days)
    difficulty = Column(Float, nullable=False, default=0.0)  # Difficulty (1-10)
    due = Column(UTCDateTime, index=True)  # Next review due date
    lapses = Column(Integer, nullable=False, default=0)  # Times forgotten
    reps = Column(Integer, nullable=False, default=0)  # Total reviews
    learning_step = Column(Integer, nullable=False, default=0)
    elapsed_days = Column(Integer, nullable=False, default=0)  # Days since previous review
    scheduled_days = Column(Integer, nullable=False, default=0)  # Days until next review
    last_reviewed_at = Column(UTCDateTime)

    # Metadata
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("learner_id", "card_id", "review_type", name="uq_card_states_learner_card_type"),
        Index("ix_card_states_learner_type_due", "learner_id", "review_type", "due"),
    )

    def to_fsrs_card(self) -> FSRSCard:
        return FSRSCard(
            card_id=self.card_id,
            learner_id=self.learner_id,
            state=State(self.state),
            stability=self.stability or 0.0,
            difficulty=self.difficulty or 0.0,
            due=self.due,
            lapses=self.lapses or 0,
            reps=self.reps or 0,
            learning_step=self.learning_step or 0,
            elapsed_days=self.elapsed_days or 0,
            scheduled_days=self.scheduled_days or 0,
            last_review=self.last_reviewed_at,
        )

    def apply(self, card: FSRSCard) -> None:
        """Copy scheduling fields from ``card``"""
        self.state = card.state.value
        self.stability = card.stability
        self.difficulty = card.difficulty
        self.due = card.due
        self.lapses = card.lapses
        self.reps = card.reps
        self.learning_step = card.learning_step
        self.elapsed_days = card.elapsed_days
        self.scheduled_days = card.scheduled_days
        self.last_reviewed_at = card.last_review

    def reset(self) -> None:
        """Back to a never-reviewed card"""
        self.apply(FSRSCard(card_id=self.card_id, learner_id=self.learner_id))

    def __repr__(self) -> str:
        return f"<CardState {self.learner_id}/{self.card_id} {self.state} due={self.due}>"


class ReviewLog(Base):
    """
    Append-only log of individual reviews for analytics and parameter optimization
    """

    __tablename__ = "review_logs"

    id = Column(Integer, primary_key=True)
    learner_id = Column(String(64), nullable=False)
    card_id = Column(String(64), nullable=False, index=True)
    session_id = Column(String(36), index=True)
    review_type = Column(String(16), nullable=False, default=ReviewType.VOCABULARY.value)

    # Review Details
    rating = Column(Integer, nullable=False)  # 1-4 (AGAIN, HARD, GOOD, EASY)
    reviewed_at = Column(UTCDateTime, nullable=False)
    elapsed_days = Column(Integer, nullable=False, default=0)
    scheduled_days = Column(Integer, nullable=False, default=0)
    is_learning_step = Column(Boolean, nullable=False, default=False)
    response_time_ms = Column(Integer)
    # Steps the scheduler used for this review, replayed by cache rebuilds
    learning_steps = Column(JSON)
    relearning_steps = Column(JSON)

    # FSRS State Snapshot
    state_before = Column(String(16), nullable=False)
    stability_before = Column(Float, nullable=False, default=0.0)
    difficulty_before = Column(Float, nullable=False, default=0.0)
    due_before = Column(UTCDateTime)
    state = Column(String(16), nullable=False)
    stability = Column(Float, nullable=False)
    difficulty = Column(Float, nullable=False)
    due = Column(UTCDateTime, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_review_logs_learner_type_time", "learner_id", "review_type", "reviewed_at"),
    )

    @classmethod
    def from_outcome(
        cls,
        outcome: ReviewOutcome,
        review_type: str,
        session_id=None,
        response_time_ms=None,
        learning_steps=None,
        relearning_steps=None,
    ) -> "ReviewLog":
        card = outcome.card
        return cls(
            learner_id=card.learner_id,
            card_id=card.card_id,
            session_id=session_id,
            review_type=review_type,
            rating=int(outcome.rating),
            reviewed_at=outcome.review_time,
            elapsed_days=outcome.elapsed_days,
            scheduled_days=card.scheduled_days,
            is_learning_step=outcome.is_learning_step,
            response_time_ms=response_time_ms,
            learning_steps=list(learning_steps) if learning_steps is not None else None,
            relearning_steps=list(relearning_steps) if relearning_steps is not None else None,
            state_before=outcome.state_before.value,
            stability_before=outcome.stability_before,
            difficulty_before=outcome.difficulty_before,
            due_before=outcome.due_before,
            state=card.state.value,
            stability=card.stability,
            difficulty=card.difficulty,
            due=card.due,
        )


@event.listens_for(ReviewLog, "before_update")
def _reject_review_log_update(mapper, connection, target):
    raise SchedulerError(f"Review log {target.id} is immutable")


@event.listens_for(ReviewLog, "before_delete")
def _reject_review_log_delete(mapper, connection, target):
    raise SchedulerError(f"Review log {target.id} cannot be deleted")


class LearnerParameters(Base):
    """
    Per-learner FSRS coefficients for one review type

    Created with the defaults on the learner's first review and replaced
    wholesale by each optimization run.
    """

    __tablename__ = "learner_parameters"

    id = Column(Integer, primary_key=True)
    learner_id = Column(String(64), nullable=False)
    review_type = Column(String(16), nullable=False, default=ReviewType.VOCABULARY.value)

    w = Column(JSON, nullable=False, default=lambda: list(DEFAULT_PARAMETERS))
    parameters_version = Column(Integer, nullable=False, default=PARAMETERS_VERSION)
    request_retention = Column(Float)  # None means use the configured target
    loss = Column(Float)
    sample_size = Column(Integer, nullable=False, default=0)
    metrics = Column(JSON)
    last_optimized_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("learner_id", "review_type", name="uq_learner_parameters_learner_type"),
    )

    @property
    def is_default(self) -> bool:
        return self.last_optimized_at is None

    def to_dict(self) -> dict:
        return {
            "learner_id": self.learner_id,
            "review_type": self.review_type,
            "w": list(self.w or DEFAULT_PARAMETERS),
            "parameters_version": self.parameters_version,
            "request_retention": self.request_retention,
            "loss": self.loss,
            "sample_size": self.sample_size,
            "metrics": self.metrics or {},
            "last_optimized_at": self.last_optimized_at.isoformat() if self.last_optimized_at else None,
            "version": self.version,
        }
