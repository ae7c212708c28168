"""
Learning session model

The session's progress is stored as a JSON document validated by
``srs.schemas.session.SessionProgress`` on every read and write.
"""
import uuid
from enum import Enum

from sqlalchemy import Column, Index, Integer, JSON, String

from srs.core.database import Base, UTCDateTime, utcnow


class SessionStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


class LearningSession(Base):
    """
    One study session of a learner over a deck
    """

    __tablename__ = "learning_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    learner_id = Column(String(64), nullable=False, index=True)
    deck_id = Column(String(64))
    exercise_type = Column(String(32), nullable=False)
    review_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=SessionStatus.IN_PROGRESS.value)
    progress = Column(JSON, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(UTCDateTime)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_learning_sessions_status_updated", "status", "updated_at"),
    )

    @property
    def is_finished(self) -> bool:
        return self.status != SessionStatus.IN_PROGRESS.value
