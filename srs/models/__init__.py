from srs.models.spaced_repetition import CardState, LearnerParameters, ReviewLog, ReviewType
from srs.models.jobs import ACTIVE_STATUSES, JobStatus, JobType, OptimizationJob
from srs.models.session import LearningSession, SessionStatus

__all__ = [
    "CardState",
    "ReviewLog",
    "LearnerParameters",
    "ReviewType",
    # Jobs
    "OptimizationJob",
    "JobType",
    "JobStatus",
    "ACTIVE_STATUSES",
    # Sessions
    "LearningSession",
    "SessionStatus",
]
