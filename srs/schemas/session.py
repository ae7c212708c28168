"""
Session schemas

Session progress and session actions are tagged unions: progress is
discriminated on the exercise ``type``, actions on the action ``type``.
Both are validated at the boundary with pydantic and then dispatched on
the tag.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from srs.adaptive.fsrs.fsrs_algorithm import State, parse_step
from srs.core.config import settings
from srs.core.exceptions import InvalidParameterError, InvalidRatingError, InvalidStageError
from srs.models.spaced_repetition import ReviewType


class ExerciseType(str, Enum):
    VOCABULARY_DECK = "VOCABULARY_DECK"
    LISTENING_EXERCISE = "LISTENING_EXERCISE"


class Stage(str, Enum):
    PRESENTING_CARD = "PRESENTING_CARD"
    PLAYING_AUDIO = "PLAYING_AUDIO"
    AWAITING_RATING = "AWAITING_RATING"


class QueueConfig(BaseModel):
    """Queue building options; defaults come from settings"""

    new_cards_per_session: int = Field(default_factory=lambda: settings.NEW_CARDS_PER_SESSION, ge=0)
    max_reviews_per_session: int = Field(default_factory=lambda: settings.MAX_REVIEWS_PER_SESSION, ge=0)
    learning_steps: List[str] = Field(default_factory=lambda: list(settings.FSRS_LEARNING_STEPS))
    relearning_steps: List[str] = Field(default_factory=lambda: list(settings.FSRS_RELEARNING_STEPS))
    learn_ahead_minutes: float = Field(default_factory=lambda: settings.LEARN_AHEAD_MINUTES, ge=0)
    # One NEW card after every N review cards; None keeps plain due order
    new_card_interval: Optional[int] = Field(default=None, ge=1)
    review_type: ReviewType = ReviewType.VOCABULARY

    @field_validator("learning_steps", "relearning_steps")
    @classmethod
    def validate_steps(cls, steps: List[str]) -> List[str]:
        for step in steps:
            parse_step(step)
        return steps


class QueueItem(BaseModel):
    card_id: str
    due: datetime
    is_new: bool = False
    state: State = State.NEW


class _ProgressBase(BaseModel):
    queue: List[QueueItem] = Field(default_factory=list)
    initial_card_ids: List[str] = Field(default_factory=list)
    current_card_data: Optional[Dict[str, Any]] = None
    config: QueueConfig = Field(default_factory=QueueConfig)
    reviews_completed: int = 0
    encountered_card_ids: List[str] = Field(default_factory=list)
    started_at: datetime
    ended_at: Optional[datetime] = None

    @property
    def head(self) -> Optional[QueueItem]:
        return self.queue[0] if self.queue else None

    @property
    def is_finished(self) -> bool:
        return self.ended_at is not None

    def mark_encountered(self, card_id: str) -> None:
        if card_id not in self.encountered_card_ids:
            self.encountered_card_ids.append(card_id)


class VocabularyDeckProgress(_ProgressBase):
    """Flashcard review: card shown, answer revealed, rated"""
    type: Literal["VOCABULARY_DECK"] = "VOCABULARY_DECK"
    stage: Literal["PRESENTING_CARD", "AWAITING_RATING"] = "PRESENTING_CARD"

    @property
    def initial_stage(self) -> str:
        return Stage.PRESENTING_CARD.value


class ListeningProgress(_ProgressBase):
    """Listening exercise: audio played (possibly repeatedly), then rated"""
    type: Literal["LISTENING_EXERCISE"] = "LISTENING_EXERCISE"
    stage: Literal["PLAYING_AUDIO", "AWAITING_RATING"] = "PLAYING_AUDIO"
    audio_plays: int = 0

    @property
    def initial_stage(self) -> str:
        return Stage.PLAYING_AUDIO.value


SessionProgress = Annotated[
    Union[VocabularyDeckProgress, ListeningProgress],
    Field(discriminator="type"),
]
progress_adapter = TypeAdapter(SessionProgress)


class RevealAnswerAction(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["REVEAL_ANSWER"] = "REVEAL_ANSWER"


class PlayAudioAction(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["PLAY_AUDIO"] = "PLAY_AUDIO"


class SubmitRatingAction(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["SUBMIT_RATING"] = "SUBMIT_RATING"
    rating: int = Field(ge=1, le=4)
    response_time_ms: Optional[int] = Field(default=None, ge=0)


class EndSessionAction(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: Literal["END_SESSION"] = "END_SESSION"


SessionAction = Annotated[
    Union[RevealAnswerAction, PlayAudioAction, SubmitRatingAction, EndSessionAction],
    Field(discriminator="type"),
]
action_adapter = TypeAdapter(SessionAction)


def parse_action(payload: Any):
    """
    Validate a raw action payload into one of the action variants

    Raises:
        InvalidRatingError: SUBMIT_RATING with a rating outside 1..4
        InvalidStageError: Unknown action type
        InvalidParameterError: Any other malformed payload
    """
    if isinstance(payload, (RevealAnswerAction, PlayAudioAction, SubmitRatingAction, EndSessionAction)):
        return payload
    try:
        return action_adapter.validate_python(payload)
    except ValidationError as e:
        for error in e.errors():
            if error["type"] == "union_tag_invalid":
                raise InvalidStageError(f"Unsupported session action: {error.get('input')!r}") from e
            if error["loc"] and error["loc"][-1] == "rating":
                raise InvalidRatingError(f"Rating must be 1-4, got {error.get('input')!r}") from e
        raise InvalidParameterError(f"Malformed session action: {e}") from e


def parse_progress(data: Dict[str, Any]):
    """Validate a stored progress document"""
    return progress_adapter.validate_python(data)


class ProgressSnapshot(BaseModel):
    """Progress figures reported to the client"""
    session_id: str
    type: ExerciseType
    stage: str
    initial_count: int
    remaining: int
    completed: int
    percent_complete: float
    reviews_completed: int
    encountered_count: int
    elapsed_seconds: float
    is_finished: bool
    current_card: Optional[Dict[str, Any]] = None
    version: Optional[int] = None  # Pass back as expected_version

    @classmethod
    def from_progress(
        cls, session_id: str, progress, now: datetime, version: Optional[int] = None
    ) -> "ProgressSnapshot":
        initial_count = len(progress.initial_card_ids)
        remaining = len(progress.queue)
        completed = max(0, initial_count - remaining)
        percent = 100.0 if initial_count == 0 else round(completed / initial_count * 100, 1)
        end = progress.ended_at or now
        return cls(
            session_id=session_id,
            type=ExerciseType(progress.type),
            stage=progress.stage,
            initial_count=initial_count,
            remaining=remaining,
            completed=completed,
            percent_complete=percent,
            reviews_completed=progress.reviews_completed,
            encountered_count=len(progress.encountered_card_ids),
            elapsed_seconds=max(0.0, (end - progress.started_at).total_seconds()),
            is_finished=progress.is_finished,
            current_card=progress.current_card_data,
            version=version,
        )
