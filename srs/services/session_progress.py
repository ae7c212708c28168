"""
Session Progress State Machine

Drives one exercise through its presentation stages until the queue is
exhausted or the learner ends the session:

    VOCABULARY_DECK:     PRESENTING_CARD --REVEAL_ANSWER--> AWAITING_RATING
    LISTENING_EXERCISE:  PLAYING_AUDIO   --PLAY_AUDIO-----> AWAITING_RATING

    AWAITING_RATING --SUBMIT_RATING--> initial stage for the new queue head
    any stage       --END_SESSION----> terminal

Each exercise type maps the actions it accepts to an operator; anything
else is rejected with InvalidStageError. One action runs per transaction
against a locked, version-checked session row.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.orm import Session

from srs.core.config import settings
from srs.core.database import translate_conflicts, utcnow
from srs.core.exceptions import ConcurrencyError, EmptyQueueError, InvalidStageError, NotFoundError
from srs.models.session import LearningSession, SessionStatus
from srs.models.spaced_repetition import ReviewType
from srs.schemas.session import (
    ExerciseType,
    ListeningProgress,
    ProgressSnapshot,
    QueueConfig,
    QueueItem,
    Stage,
    VocabularyDeckProgress,
    parse_action,
    parse_progress,
)
from srs.services.card_pool import CardPoolProvider, DeckCardPoolProvider
from srs.services.card_store import CardStore
from srs.services.queue_builder import QueueBuilder
from srs.services.review_recorder import ReviewRecorder

logger = logging.getLogger(__name__)

CardDataLoader = Callable[[QueueItem], Dict[str, Any]]

_PROGRESS_TYPES = {
    ExerciseType.VOCABULARY_DECK: VocabularyDeckProgress,
    ExerciseType.LISTENING_EXERCISE: ListeningProgress,
}

_DEFAULT_REVIEW_TYPES = {
    ExerciseType.VOCABULARY_DECK: ReviewType.VOCABULARY,
    ExerciseType.LISTENING_EXERCISE: ReviewType.LISTENING,
}


def default_card_data(item: QueueItem) -> Dict[str, Any]:
    return {
        "card_id": item.card_id,
        "is_new": item.is_new,
        "state": item.state.value,
        "due": item.due.isoformat(),
    }


class SessionService:
    """
    Session lifecycle within an open database session

    Args:
        db: Session whose transaction each call joins
        card_pool: Resolves deck ids to card ids (defaults to granted deck cards)
        card_data_loader: Builds ``current_card_data`` for the queue head
    """

    def __init__(
        self,
        db: Session,
        card_pool: Optional[CardPoolProvider] = None,
        card_data_loader: Optional[CardDataLoader] = None,
    ):
        self.db = db
        self.card_pool = card_pool or DeckCardPoolProvider(db)
        self.card_data_loader = card_data_loader or default_card_data
        self.queue_builder = QueueBuilder(db)

    def start_session(
        self,
        learner_id: str,
        deck_id: str,
        exercise_type: Union[ExerciseType, str] = ExerciseType.VOCABULARY_DECK,
        config: Optional[QueueConfig] = None,
        now: Optional[datetime] = None,
    ) -> LearningSession:
        """
        Start a session over the learner's due cards in ``deck_id``

        The initial queue is frozen as the session scope; later rebuilds only
        ever consider those cards. An empty queue gives a session that is
        already COMPLETED.
        """
        exercise_type = ExerciseType(exercise_type)
        now = now or utcnow()
        config = config or QueueConfig(review_type=_DEFAULT_REVIEW_TYPES[exercise_type])

        card_ids = self.card_pool.get_card_ids(learner_id, deck_id)
        # Access confirmed by the pool provider
        CardStore(self.db).grant(learner_id, card_ids, deck_id=deck_id, review_type=config.review_type)

        queue = self.queue_builder.build_queue(learner_id, card_ids, config, now)
        progress = _PROGRESS_TYPES[exercise_type](
            queue=queue,
            initial_card_ids=[item.card_id for item in queue],
            config=config,
            started_at=now,
        )
        progress.current_card_data = self.card_data_loader(queue[0]) if queue else None

        session = LearningSession(
            learner_id=learner_id,
            deck_id=deck_id,
            exercise_type=exercise_type.value,
            review_type=config.review_type.value,
            status=SessionStatus.IN_PROGRESS.value,
            created_at=now,
            updated_at=now,
        )
        if not queue:
            progress.ended_at = now
            session.status = SessionStatus.COMPLETED.value
            session.completed_at = now
        session.progress = progress.model_dump(mode="json")

        self.db.add(session)
        self.db.flush()
        logger.info(
            f"Session {session.id} started: learner={learner_id} deck={deck_id} "
            f"type={exercise_type.value} cards={len(queue)}"
        )
        return session

    def get_session(self, session_id: str, lock: bool = False) -> LearningSession:
        query = self.db.query(LearningSession).filter(LearningSession.id == session_id)
        if lock:
            with translate_conflicts(f"session {session_id}"):
                session = query.with_for_update().populate_existing().one_or_none()
        else:
            session = query.one_or_none()
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def get_progress(self, session_id: str, now: Optional[datetime] = None) -> ProgressSnapshot:
        session = self.get_session(session_id)
        return ProgressSnapshot.from_progress(
            session.id, parse_progress(session.progress), now or utcnow(), session.version
        )

    def submit_action(
        self,
        session_id: str,
        payload: Any,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> ProgressSnapshot:
        """
        Apply one action to a session

        Args:
            session_id: Session ID
            payload: Action dict (or action model) tagged by ``type``
            now: Action time (defaults to current UTC time)
            expected_version: Session version the client last saw; a mismatch
                raises ConcurrencyError

        Returns:
            Progress after the action

        Raises:
            InvalidStageError: Action not legal now, unsupported, or session ended
            EmptyQueueError: Rating submitted with nothing left to rate
            ConcurrencyError: Another action on the session got there first
        """
        action = parse_action(payload)
        now = now or utcnow()

        session = self.get_session(session_id, lock=True)
        if expected_version is not None and session.version != expected_version:
            raise ConcurrencyError(
                f"Session {session_id} is at version {session.version}, client expected {expected_version}"
            )
        if session.is_finished:
            raise InvalidStageError(f"Session {session_id} has ended ({session.status})")

        progress = parse_progress(session.progress)
        operator = OPERATORS[progress.type].get(action.type)
        if operator is None:
            raise InvalidStageError(f"{action.type} is not supported by {progress.type} sessions")

        operator(self, session, progress, action, now)

        session.progress = progress.model_dump(mode="json")
        session.updated_at = now
        if progress.is_finished:
            session.status = SessionStatus.COMPLETED.value
            session.completed_at = now
            logger.info(
                f"Session {session_id} finished after {progress.reviews_completed} reviews "
                f"({len(progress.encountered_card_ids)} cards)"
            )

        with translate_conflicts(f"session {session_id}"):
            self.db.flush()
        return ProgressSnapshot.from_progress(session.id, progress, now, session.version)


def _finish(progress, now: datetime) -> None:
    progress.ended_at = now
    progress.current_card_data = None


def _reveal_answer(service: SessionService, session, progress, action, now: datetime) -> None:
    if progress.stage != Stage.PRESENTING_CARD.value:
        raise InvalidStageError(f"Cannot reveal the answer while {progress.stage}")
    progress.stage = Stage.AWAITING_RATING.value


def _play_audio(service: SessionService, session, progress, action, now: datetime) -> None:
    # Replaying while awaiting the rating is allowed
    progress.audio_plays += 1
    progress.stage = Stage.AWAITING_RATING.value


def _submit_rating(service: SessionService, session, progress, action, now: datetime) -> None:
    if progress.stage != Stage.AWAITING_RATING.value:
        raise InvalidStageError(f"Cannot submit a rating while {progress.stage}")
    head = progress.head
    if head is None:
        raise EmptyQueueError(f"Session {session.id} has no card to rate")

    recorder = ReviewRecorder(
        service.db,
        learning_steps=progress.config.learning_steps,
        relearning_steps=progress.config.relearning_steps,
    )
    recorder.record_review(
        session.learner_id,
        head.card_id,
        action.rating,
        review_type=progress.config.review_type,
        session_id=session.id,
        response_time_ms=action.response_time_ms,
        now=now,
    )

    progress.reviews_completed += 1
    progress.mark_encountered(head.card_id)
    progress.queue = service.queue_builder.refresh_queue(session.learner_id, progress, now)
    progress.stage = progress.initial_stage
    if isinstance(progress, ListeningProgress):
        progress.audio_plays = 0

    if progress.queue:
        progress.current_card_data = service.card_data_loader(progress.queue[0])
    else:
        _finish(progress, now)


def _end_session(service: SessionService, session, progress, action, now: datetime) -> None:
    _finish(progress, now)


OPERATORS: Dict[str, Dict[str, Callable]] = {
    ExerciseType.VOCABULARY_DECK.value: {
        "REVEAL_ANSWER": _reveal_answer,
        "SUBMIT_RATING": _submit_rating,
        "END_SESSION": _end_session,
    },
    ExerciseType.LISTENING_EXERCISE.value: {
        "PLAY_AUDIO": _play_audio,
        "SUBMIT_RATING": _submit_rating,
        "END_SESSION": _end_session,
    },
}


def cleanup_abandoned_sessions(
    db: Session,
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Mark IN_PROGRESS sessions idle for longer than ``older_than`` ABANDONED

    Returns:
        Number of sessions abandoned
    """
    now = now or utcnow()
    older_than = older_than or timedelta(hours=settings.SESSION_ABANDON_HOURS)
    cutoff = now - older_than

    sessions = (
        db.query(LearningSession)
        .filter(
            LearningSession.status == SessionStatus.IN_PROGRESS.value,
            LearningSession.updated_at < cutoff,
        )
        .with_for_update(skip_locked=True)
        .all()
    )
    for session in sessions:
        progress = parse_progress(session.progress)
        _finish(progress, now)
        session.progress = progress.model_dump(mode="json")
        session.status = SessionStatus.ABANDONED.value
        session.updated_at = now

    if sessions:
        with translate_conflicts("abandoned sessions"):
            db.flush()
        logger.info(f"Marked {len(sessions)} sessions abandoned (idle since before {cutoff.isoformat()})")
    return len(sessions)
