from srs.schemas.session import (
    ExerciseType,
    ListeningProgress,
    ProgressSnapshot,
    QueueConfig,
    QueueItem,
    SessionAction,
    SessionProgress,
    Stage,
    VocabularyDeckProgress,
    parse_action,
    parse_progress,
)

__all__ = [
    "ExerciseType",
    "ListeningProgress",
    "ProgressSnapshot",
    "QueueConfig",
    "QueueItem",
    "SessionAction",
    "SessionProgress",
    "Stage",
    "VocabularyDeckProgress",
    "parse_action",
    "parse_progress",
]
