"""
Concurrent Access Tests

Two connections to a file-backed SQLite database racing on the same rows.
SQLite ignores SELECT ... FOR UPDATE, so these exercise the version checks
and lock-timeout translation that back the row locks on PostgreSQL.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import LEARNER, NOW, CardFactory
from srs.core.database import init_db, session_scope
from srs.core.exceptions import ConcurrencyError, InvalidStageError
from srs.services.card_pool import StaticCardPoolProvider
from srs.services.card_store import CardStore
from srs.services.review_recorder import ReviewRecorder
from srs.services.session_progress import SessionService

REVEAL = {"type": "REVEAL_ANSWER"}


@pytest.fixture
def file_factory(tmp_path):
    """Session factory over a database file; lock waits give up after 100ms"""
    engine = create_engine(f"sqlite:///{tmp_path / 'srs.db'}", connect_args={"timeout": 0.1})
    init_db(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def pool():
    return StaticCardPoolProvider({"deck-1": ["A", "B"]})


class TestOptimisticLocking:
    """Stale card versions are detected on write"""

    def test_stale_card_state(self, file_factory):
        with session_scope(file_factory) as db:
            CardFactory(db).create("c1")

        first, second = file_factory(), file_factory()
        try:
            mine = CardStore(first).get(LEARNER, "c1")
            theirs = CardStore(second).get(LEARNER, "c1")

            mine.reps = 1
            CardStore(first).save(mine)
            first.commit()

            theirs.reps = 2
            with pytest.raises(ConcurrencyError):
                CardStore(second).save(theirs)
        finally:
            second.rollback()
            first.close()
            second.close()

    def test_each_review_bumps_version(self, file_factory):
        with session_scope(file_factory) as db:
            CardFactory(db).create("c1")
        with session_scope(file_factory) as db:
            ReviewRecorder(db).record_review(LEARNER, "c1", 1, now=NOW)

        with session_scope(file_factory) as db:
            state = ReviewRecorder(db).record_review(LEARNER, "c1", 3, now=NOW)
            assert state.reps == 2
            assert state.version == 3


class TestSessionContention:
    """Two actions on the same session"""

    def test_uncommitted_action_blocks_second(self, file_factory, pool):
        with session_scope(file_factory) as db:
            session_id = SessionService(db, pool).start_session(LEARNER, "deck-1", now=NOW).id

        first, second = file_factory(), file_factory()
        try:
            SessionService(first, pool).submit_action(session_id, REVEAL, NOW)

            with pytest.raises(ConcurrencyError):
                SessionService(second, pool).submit_action(session_id, REVEAL, NOW)
            second.rollback()

            first.commit()
        finally:
            first.close()
            second.close()

        # The client resyncs: the answer is already revealed
        with pytest.raises(InvalidStageError):
            with session_scope(file_factory) as db:
                SessionService(db, pool).submit_action(session_id, REVEAL, NOW)

        with session_scope(file_factory) as db:
            snapshot = SessionService(db, pool).get_progress(session_id, NOW)
            assert snapshot.stage == "AWAITING_RATING"
            assert snapshot.version == 2
