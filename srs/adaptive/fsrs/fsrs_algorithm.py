"""
FSRS (Free Spaced Repetition Scheduler) Algorithm
Based on the paper: "A Stochastic Shortest Path Algorithm for Optimizing Spaced Repetition Scheduling"

FSRS-4.5 memory model: every review updates a card's stability (days until
recall probability decays to 90%) and difficulty (1-10), from which the next
interval follows. The model itself is a set of pure functions; FSRSAlgorithm
layers the learning-step state machine on top.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple, Union
from enum import Enum, IntEnum
import math
import re

from srs.core.exceptions import InvalidParameterError, InvalidRatingError

# Forgetting curve R(t, S) = (1 + FACTOR * t / S) ^ DECAY, chosen so R(S, S) = 0.9
DECAY = -0.5
FACTOR = 19 / 81

PARAMETER_COUNT = 17
PARAMETERS_VERSION = 1

# Default FSRS-4.5 parameters (fitted on the open FSRS benchmark)
DEFAULT_PARAMETERS: Tuple[float, ...] = (
    0.4872,   # w[0]: Initial stability for AGAIN
    1.4003,   # w[1]: Initial stability for HARD
    3.7145,   # w[2]: Initial stability for GOOD
    13.8206,  # w[3]: Initial stability for EASY
    5.1618,   # w[4]: Initial difficulty for GOOD
    1.2298,   # w[5]: Initial difficulty slope per rating
    0.8975,   # w[6]: Difficulty change per rating
    0.031,    # w[7]: Difficulty mean reversion weight
    1.6474,   # w[8]: Recall stability growth (log scale)
    0.1367,   # w[9]: Stability saturation exponent
    1.0461,   # w[10]: Retrievability gain on recall
    2.1072,   # w[11]: Post-lapse stability scale
    0.0793,   # w[12]: Post-lapse difficulty exponent
    0.3246,   # w[13]: Post-lapse stability exponent
    1.587,    # w[14]: Retrievability gain on lapse
    0.2272,   # w[15]: Hard penalty
    2.8755,   # w[16]: Easy bonus
)

MIN_STABILITY = 0.01
MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0


class Rating(IntEnum):
    """Review rating options"""
    AGAIN = 1  # Completely forgot
    HARD = 2   # Difficult to recall
    GOOD = 3   # Recalled correctly
    EASY = 4   # Recalled easily


class State(str, Enum):
    """Card lifecycle state"""
    NEW = "NEW"
    LEARNING = "LEARNING"
    REVIEW = "REVIEW"
    RELEARNING = "RELEARNING"


@dataclass(frozen=True)
class MemoryState:
    """Output of the memory model for one review"""
    stability: float
    difficulty: float
    interval_days: int


def parse_rating(rating: Union[int, Rating]) -> Rating:
    """Coerce an int to Rating, raising InvalidRatingError outside {1..4}"""
    if isinstance(rating, bool):
        raise InvalidRatingError(f"Rating must be an integer in 1..4, got {rating!r}")
    try:
        return Rating(int(rating))
    except (TypeError, ValueError):
        raise InvalidRatingError(f"Rating must be an integer in 1..4, got {rating!r}") from None


def validate_parameters(params: Optional[Sequence[float]]) -> Tuple[float, ...]:
    """
    Check arity and domain of a parameter vector.

    Args:
        params: 17 FSRS coefficients (None selects the defaults)

    Returns:
        The parameters as a tuple of floats
    """
    if params is None:
        return DEFAULT_PARAMETERS
    try:
        w = tuple(float(p) for p in params)
    except (TypeError, ValueError):
        raise InvalidParameterError("Parameters must be a sequence of numbers") from None

    if len(w) != PARAMETER_COUNT:
        raise InvalidParameterError(f"Expected {PARAMETER_COUNT} parameters, got {len(w)}")
    if not all(math.isfinite(p) for p in w):
        raise InvalidParameterError("Parameters must be finite")
    if any(p <= 0 for p in w[0:4]):
        raise InvalidParameterError("Initial stabilities w[0..3] must be positive")
    for i in (9, 12, 13):
        if w[i] < 0:
            raise InvalidParameterError(f"Decay exponent w[{i}] must be non-negative, got {w[i]}")
    if not 0 <= w[7] <= 1:
        raise InvalidParameterError(f"Mean reversion weight w[7] must be in [0, 1], got {w[7]}")
    if w[15] < 0 or w[16] < 0:
        raise InvalidParameterError("Hard penalty and easy bonus must be non-negative")
    return w


def retrievability(elapsed_days: float, stability: float) -> float:
    """
    Probability of recall after ``elapsed_days`` for a memory of ``stability``.

    Formula: R(t,S) = (1 + FACTOR * t / S) ^ DECAY
    """
    if stability <= 0:
        return 0.0
    return math.pow(1 + FACTOR * max(0.0, elapsed_days) / stability, DECAY)


def _clamp_difficulty(difficulty: float) -> float:
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, difficulty))


def init_stability(rating: Rating, w: Sequence[float]) -> float:
    return max(MIN_STABILITY, w[rating - 1])


def init_difficulty(rating: Rating, w: Sequence[float]) -> float:
    return _clamp_difficulty(w[4] - w[5] * (rating - 3))


def next_difficulty(difficulty: float, rating: Rating, w: Sequence[float]) -> float:
    """Rating-driven difficulty update with mean reversion toward D0(EASY)"""
    shifted = difficulty - w[6] * (rating - 3)
    reverted = w[7] * init_difficulty(Rating.EASY, w) + (1 - w[7]) * shifted
    return _clamp_difficulty(reverted)


def next_recall_stability(
    stability: float, difficulty: float, r: float, rating: Rating, w: Sequence[float]
) -> float:
    """Stability after a successful recall (HARD, GOOD or EASY)"""
    hard_penalty = w[15] if rating == Rating.HARD else 1.0
    easy_bonus = w[16] if rating == Rating.EASY else 1.0
    growth = (
        math.exp(w[8])
        * (11 - difficulty)
        * math.pow(stability, -w[9])
        * (math.exp((1 - r) * w[10]) - 1)
        * hard_penalty
        * easy_bonus
    )
    return max(MIN_STABILITY, stability * (1 + growth))


def next_forget_stability(
    stability: float, difficulty: float, r: float, w: Sequence[float]
) -> float:
    """Stability after a lapse; never exceeds the pre-lapse stability"""
    post_lapse = (
        w[11]
        * math.pow(difficulty, -w[12])
        * (math.pow(stability + 1, w[13]) - 1)
        * math.exp((1 - r) * w[14])
    )
    return max(MIN_STABILITY, min(stability, post_lapse))


def next_interval(
    stability: float,
    request_retention: float = 0.9,
    minimum_interval: int = 1,
    maximum_interval: int = 36500,
) -> int:
    """
    Interval in whole days that keeps retrievability at ``request_retention``.

    Formula: I = S / FACTOR * (r^(1/DECAY) - 1); equals S at r = 0.9
    """
    if not 0 < request_retention < 1:
        raise InvalidParameterError(f"request_retention must be in (0, 1), got {request_retention}")
    interval = stability / FACTOR * (math.pow(request_retention, 1 / DECAY) - 1)
    if not math.isfinite(interval) or interval >= maximum_interval:
        return int(maximum_interval)
    return int(max(minimum_interval, min(maximum_interval, round(interval))))


def compute_next_state(
    prior_stability: Optional[float],
    prior_difficulty: Optional[float],
    elapsed_days: float,
    rating: Union[int, Rating],
    params: Optional[Sequence[float]] = None,
    request_retention: float = 0.9,
    minimum_interval: int = 1,
    maximum_interval: int = 36500,
) -> MemoryState:
    """
    Memory model: map (S, D, elapsed days, rating) to (S', D', interval).

    A prior stability of None or 0 marks a card that has never been reviewed;
    its state comes from the initial formulas keyed only by rating.

    Args:
        prior_stability: Current stability (days), None/0 for a new card
        prior_difficulty: Current difficulty in [1, 10]
        elapsed_days: Days since the previous review (0 allowed)
        rating: 1=AGAIN, 2=HARD, 3=GOOD, 4=EASY
        params: 17 FSRS coefficients (defaults when None)
        request_retention: Target recall probability at the due date
        minimum_interval: Lower interval clamp (days)
        maximum_interval: Upper interval clamp (days)

    Returns:
        MemoryState with the new stability, difficulty and interval
    """
    w = validate_parameters(params)
    grade = parse_rating(rating)
    inputs = {"prior_stability": prior_stability, "prior_difficulty": prior_difficulty, "elapsed_days": elapsed_days}
    for name, value in inputs.items():
        if value is not None and not math.isfinite(value):
            raise InvalidParameterError(f"{name} must be finite, got {value}")
    if elapsed_days < 0:
        raise InvalidParameterError(f"elapsed_days must be non-negative, got {elapsed_days}")

    if not prior_stability:
        stability = init_stability(grade, w)
        difficulty = init_difficulty(grade, w)
    else:
        if prior_stability < 0:
            raise InvalidParameterError(f"Stability must be positive, got {prior_stability}")
        prior_d = _clamp_difficulty(prior_difficulty if prior_difficulty else w[4])
        r = retrievability(elapsed_days, prior_stability)
        if grade == Rating.AGAIN:
            stability = next_forget_stability(prior_stability, prior_d, r, w)
        else:
            stability = next_recall_stability(prior_stability, prior_d, r, grade, w)
        difficulty = next_difficulty(prior_d, grade, w)

    interval = next_interval(stability, request_retention, minimum_interval, maximum_interval)
    return MemoryState(stability=stability, difficulty=difficulty, interval_days=interval)


_STEP_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd])\s*$")
_STEP_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_step(step: Union[str, int, float, timedelta]) -> timedelta:
    """
    Parse a learning step such as "30s", "10m", "1h" or "1d".

    Bare numbers are minutes.
    """
    if isinstance(step, timedelta):
        return step
    if isinstance(step, (int, float)):
        return timedelta(minutes=step)
    match = _STEP_PATTERN.match(step)
    if not match:
        raise InvalidParameterError(f"Invalid learning step {step!r}")
    value, unit = match.groups()
    return timedelta(**{_STEP_UNITS[unit]: float(value)})


@dataclass
class SchedulerConfig:
    """Configuration for the FSRS scheduler"""

    parameters: Tuple[float, ...] = DEFAULT_PARAMETERS
    request_retention: float = 0.9
    minimum_interval: int = 1
    maximum_interval: int = 36500
    learning_steps: List[str] = field(default_factory=lambda: ["10m"])
    relearning_steps: List[str] = field(default_factory=lambda: ["10m"])

    def __post_init__(self):
        self.parameters = validate_parameters(self.parameters)
        if not 0 < self.request_retention < 1:
            raise InvalidParameterError(
                f"request_retention must be in (0, 1), got {self.request_retention}"
            )
        if not 1 <= self.minimum_interval <= self.maximum_interval:
            raise InvalidParameterError("Interval bounds must satisfy 1 <= minimum <= maximum")
        # Fail fast on malformed steps
        self.learning_deltas
        self.relearning_deltas

    @property
    def learning_deltas(self) -> List[timedelta]:
        return [parse_step(s) for s in self.learning_steps]

    @property
    def relearning_deltas(self) -> List[timedelta]:
        return [parse_step(s) for s in self.relearning_steps]

    @classmethod
    def from_settings(cls, parameters: Optional[Sequence[float]] = None, **overrides) -> "SchedulerConfig":
        """Build from application settings, optionally with learner parameters"""
        from srs.core.config import settings

        values = {
            "parameters": validate_parameters(parameters),
            "request_retention": settings.FSRS_REQUEST_RETENTION,
            "minimum_interval": settings.FSRS_MINIMUM_INTERVAL,
            "maximum_interval": settings.FSRS_MAXIMUM_INTERVAL,
            "learning_steps": list(settings.FSRS_LEARNING_STEPS),
            "relearning_steps": list(settings.FSRS_RELEARNING_STEPS),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> Dict:
        return {
            "parameters": list(self.parameters),
            "request_retention": self.request_retention,
            "minimum_interval": self.minimum_interval,
            "maximum_interval": self.maximum_interval,
            "learning_steps": list(self.learning_steps),
            "relearning_steps": list(self.relearning_steps),
        }


@dataclass
class FSRSCard:
    """
    In-memory FSRS state of one learner x card pair
    """
    card_id: str
    learner_id: str
    state: State = State.NEW
    stability: float = 0.0
    difficulty: float = 0.0
    due: Optional[datetime] = None
    lapses: int = 0
    reps: int = 0
    learning_step: int = 0
    elapsed_days: int = 0
    scheduled_days: int = 0
    last_review: Optional[datetime] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            "card_id": self.card_id,
            "learner_id": self.learner_id,
            "state": self.state.value,
            "stability": self.stability,
            "difficulty": self.difficulty,
            "due": self.due.isoformat() if self.due else None,
            "lapses": self.lapses,
            "reps": self.reps,
            "learning_step": self.learning_step,
            "elapsed_days": self.elapsed_days,
            "scheduled_days": self.scheduled_days,
            "last_review": self.last_review.isoformat() if self.last_review else None,
        }


@dataclass(frozen=True)
class ReviewOutcome:
    """Result of scheduling one review: the new card plus the log snapshot"""
    card: FSRSCard
    rating: Rating
    review_time: datetime
    elapsed_days: int
    state_before: State
    stability_before: float
    difficulty_before: float
    due_before: Optional[datetime]
    is_learning_step: bool

    def to_log(self) -> Dict:
        return {
            "card_id": self.card.card_id,
            "learner_id": self.card.learner_id,
            "rating": int(self.rating),
            "review_time": self.review_time.isoformat(),
            "elapsed_days": self.elapsed_days,
            "scheduled_days": self.card.scheduled_days,
            "stability_before": self.stability_before,
            "difficulty_before": self.difficulty_before,
            "stability": self.card.stability,
            "difficulty": self.card.difficulty,
            "state_before": self.state_before.value,
            "state": self.card.state.value,
            "is_learning_step": self.is_learning_step,
        }


class FSRSAlgorithm:
    """
    FSRS scheduler: memory model plus learning-step state machine

    Transitions:
    - NEW/LEARNING: AGAIN -> first step, HARD -> repeat step,
      GOOD -> next step (REVIEW after the last), EASY -> REVIEW
    - REVIEW: AGAIN -> RELEARNING (lapse), otherwise REVIEW
    - RELEARNING: same as LEARNING over the relearning steps
    """

    def __init__(self, config: Optional[SchedulerConfig] = None):
        """Initialize with optional custom configuration"""
        self.config = config or SchedulerConfig()
        self.w = self.config.parameters

    def calculate_retrievability(self, elapsed_days: float, stability: float) -> float:
        return retrievability(elapsed_days, stability)

    def next_interval(self, stability: float) -> int:
        return next_interval(
            stability,
            self.config.request_retention,
            self.config.minimum_interval,
            self.config.maximum_interval,
        )

    def memory_update(self, card: FSRSCard, elapsed_days: float, rating: Rating) -> MemoryState:
        """Run the memory model for ``card``"""
        prior = None if card.state == State.NEW else card.stability
        return compute_next_state(
            prior,
            card.difficulty,
            elapsed_days,
            rating,
            self.w,
            self.config.request_retention,
            self.config.minimum_interval,
            self.config.maximum_interval,
        )

    def _step_outcome(
        self,
        steps: List[timedelta],
        current_step: int,
        rating: Rating,
    ) -> Optional[int]:
        """Next step index within ``steps``; None means graduate to REVIEW"""
        if rating == Rating.EASY or not steps:
            return None
        if rating == Rating.AGAIN:
            return 0
        if rating == Rating.HARD:
            return min(current_step, len(steps) - 1)
        nxt = current_step + 1
        return nxt if nxt < len(steps) else None

    def review_card(
        self, card: FSRSCard, rating: Union[int, Rating], review_time: datetime
    ) -> ReviewOutcome:
        """
        Process a card review and compute its next state

        The input card is not modified.

        Args:
            card: The card being reviewed
            rating: User's rating
            review_time: Time of review

        Returns:
            ReviewOutcome with the updated card and before/after snapshot
        """
        grade = parse_rating(rating)

        if card.last_review and card.state != State.NEW:
            elapsed_days = max(0, (review_time - card.last_review).days)
        else:
            elapsed_days = 0

        memory = self.memory_update(card, elapsed_days, grade)

        state = card.state
        lapses = card.lapses
        step: Optional[int]

        if state in (State.NEW, State.LEARNING):
            steps = self.config.learning_deltas
            current = card.learning_step if state == State.LEARNING else 0
            step = self._step_outcome(steps, current, grade)
            new_state = State.REVIEW if step is None else State.LEARNING
        elif state == State.REVIEW:
            steps = self.config.relearning_deltas
            if grade == Rating.AGAIN:
                lapses += 1
                step = 0 if steps else None
                new_state = State.RELEARNING if steps else State.REVIEW
            else:
                step = None
                new_state = State.REVIEW
        else:
            steps = self.config.relearning_deltas
            step = self._step_outcome(steps, card.learning_step, grade)
            new_state = State.REVIEW if step is None else State.RELEARNING

        if step is None:
            scheduled_days = memory.interval_days
            due = review_time + timedelta(days=scheduled_days)
            learning_step = 0
        else:
            scheduled_days = 0
            due = review_time + steps[step]
            learning_step = step

        updated = replace(
            card,
            state=new_state,
            stability=memory.stability,
            difficulty=memory.difficulty,
            due=due,
            lapses=lapses,
            reps=card.reps + 1,
            learning_step=learning_step,
            elapsed_days=elapsed_days,
            scheduled_days=scheduled_days,
            last_review=review_time,
        )

        return ReviewOutcome(
            card=updated,
            rating=grade,
            review_time=review_time,
            elapsed_days=elapsed_days,
            state_before=card.state,
            stability_before=card.stability,
            difficulty_before=card.difficulty,
            due_before=card.due,
            is_learning_step=new_state in (State.LEARNING, State.RELEARNING),
        )

    def get_next_states(self, card: FSRSCard, review_time: datetime) -> Dict[Rating, Dict]:
        """
        Preview what would happen for each rating
        Useful for showing users predicted intervals

        Args:
            card: Current card state
            review_time: Hypothetical time of review

        Returns:
            Dictionary mapping ratings to predicted outcomes
        """
        predictions = {}

        for rating in Rating:
            outcome = self.review_card(card, rating, review_time)
            predictions[rating] = {
                "state": outcome.card.state.value,
                "interval": outcome.card.scheduled_days,
                "due": outcome.card.due.isoformat() if outcome.card.due else None,
                "stability": outcome.card.stability,
                "difficulty": outcome.card.difficulty,
            }

        return predictions
