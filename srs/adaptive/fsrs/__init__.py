"""
FSRS Spaced Repetition System

Includes:
- compute_next_state: Pure FSRS-4.5 memory model
- FSRSAlgorithm: Learning-step state machine on top of the memory model
- FSRSCard: Card state with stability, difficulty, due date
- Rating: Review rating enum (AGAIN, HARD, GOOD, EASY)
- Parameter Learning: Per-learner maximum-likelihood fit of the 17 coefficients
"""
from .fsrs_algorithm import (
    DEFAULT_PARAMETERS,
    PARAMETERS_VERSION,
    FSRSAlgorithm,
    FSRSCard,
    MemoryState,
    Rating,
    ReviewOutcome,
    SchedulerConfig,
    State,
    compute_next_state,
    retrievability,
    validate_parameters,
)

from .parameter_learning import (
    # Data models
    ReviewRecord,
    OptimizationResult,
    # Loss functions
    LossFunction,
    # Core learner
    FSRSParameterLearner,
)

__all__ = [
    # Memory model
    "DEFAULT_PARAMETERS",
    "PARAMETERS_VERSION",
    "MemoryState",
    "compute_next_state",
    "retrievability",
    "validate_parameters",
    # Scheduler
    "FSRSAlgorithm",
    "FSRSCard",
    "Rating",
    "ReviewOutcome",
    "SchedulerConfig",
    "State",
    # Parameter learning
    "ReviewRecord",
    "OptimizationResult",
    "LossFunction",
    "FSRSParameterLearner",
]
