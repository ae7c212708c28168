"""
Background job records

A job row is both the queue entry and its audit trail: it is claimed,
run and finished in place.
"""
from enum import Enum

from sqlalchemy import Boolean, Column, Index, Integer, JSON, String, Text, text
from sqlalchemy.orm import validates

from srs.core.database import Base, UTCDateTime, utcnow
from srs.core.exceptions import InvalidStageError


class JobType(str, Enum):
    OPTIMIZE_PARAMS = "OPTIMIZE_PARAMS"
    REBUILD_CACHE = "REBUILD_CACHE"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"  # Preconditions not met (e.g. too few reviews)


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)

# Status only moves forward
_TRANSITIONS = {
    JobStatus.PENDING.value: {JobStatus.RUNNING.value, JobStatus.FAILED.value, JobStatus.SKIPPED.value},
    JobStatus.RUNNING.value: {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.SKIPPED.value},
    JobStatus.COMPLETED.value: set(),
    JobStatus.FAILED.value: set(),
    JobStatus.SKIPPED.value: set(),
}

_ACTIVE_PREDICATE = "status IN ('PENDING', 'RUNNING')"


class OptimizationJob(Base):
    """
    Parameter optimization or cache rebuild requested for a learner
    """

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)  # Who asked for it
    learner_id = Column(String(64), nullable=False)
    job_type = Column(String(32), nullable=False)
    review_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value, index=True)

    result = Column(JSON)
    error = Column(Text)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    started_at = Column(UTCDateTime)
    finished_at = Column(UTCDateTime)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # At most one active job per learner
        Index(
            "uq_jobs_active_learner",
            "learner_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
    )

    @validates("status")
    def _validate_status(self, key, value):
        value = JobStatus(value).value
        current = self.status
        if current is not None and current != value and value not in _TRANSITIONS[current]:
            raise InvalidStageError(f"Job {self.id} cannot move from {current} to {value}")
        return value

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "learner_id": self.learner_id,
            "job_type": self.job_type,
            "review_type": self.review_type,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
