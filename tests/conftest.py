"""
Shared test fixtures

Provides:
- In-memory SQLite engine with the full schema
- Session factory and a plain database session
- Card state factory
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from srs.adaptive.fsrs.fsrs_algorithm import State
from srs.core.database import init_db
from srs.models.spaced_repetition import CardState, ReviewType

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
LEARNER = "learner-1"


@pytest.fixture
def engine():
    """Fresh in-memory database per test"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    """Database session rolled back after the test"""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


class CardFactory:
    """Factory for card states of a learner"""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        card_id: str,
        learner_id: str = LEARNER,
        state: State = State.NEW,
        due: Optional[datetime] = None,
        stability: float = 0.0,
        difficulty: float = 0.0,
        last_reviewed_at: Optional[datetime] = None,
        deck_id: Optional[str] = "deck-1",
        review_type: ReviewType = ReviewType.VOCABULARY,
        lapses: int = 0,
        learning_step: int = 0,
    ) -> CardState:
        """Create and flush a card state; reviewed states default to sensible values"""
        reviewed = state != State.NEW
        if reviewed:
            stability = stability or 5.0
            difficulty = difficulty or 5.0
            last_reviewed_at = last_reviewed_at or (due or NOW) - timedelta(days=5)
        card = CardState(
            learner_id=learner_id,
            card_id=card_id,
            deck_id=deck_id,
            review_type=review_type.value,
            state=state.value,
            stability=stability,
            difficulty=difficulty,
            due=due,
            lapses=lapses,
            reps=1 if reviewed else 0,
            learning_step=learning_step,
            elapsed_days=0,
            scheduled_days=0,
            last_reviewed_at=last_reviewed_at,
        )
        self.db.add(card)
        self.db.flush()
        return card


@pytest.fixture
def cards(db) -> CardFactory:
    return CardFactory(db)
