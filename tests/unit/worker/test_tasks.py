"""
Tests for Celery task wiring
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import LEARNER
from srs.core import database
from srs.core.database import session_scope, utcnow
from srs.models.jobs import JobStatus
from srs.services.card_pool import StaticCardPoolProvider
from srs.services.jobs import JobService
from srs.services.session_progress import SessionService
from srs.worker.celery_app import app
from srs.worker.tasks import fsrs_tasks, session_tasks


@pytest.fixture
def default_factory(session_factory, monkeypatch):
    """Point the process-wide session factory at the test database"""
    monkeypatch.setattr(database, "get_session_factory", lambda: session_factory)
    return session_factory


@pytest.fixture
def no_broker(monkeypatch):
    delay = MagicMock(return_value=MagicMock(id="task-1"))
    monkeypatch.setattr(fsrs_tasks.process_pending_jobs, "delay", delay)
    monkeypatch.setattr(fsrs_tasks.process_pending_jobs, "update_state", MagicMock())
    return delay


class TestCeleryApp:
    """Routing and beat configuration"""

    def test_beat_schedule(self):
        schedule = app.conf.beat_schedule
        assert schedule["process-pending-jobs"]["task"] == "process_pending_jobs"
        assert schedule["weekly-fsrs-optimization"]["task"] == "scheduled_fsrs_optimization"
        assert schedule["daily-cleanup-abandoned-sessions"]["task"] == "cleanup_abandoned_sessions"

    def test_tasks_registered(self):
        for name in ("process_pending_jobs", "optimize_learner_fsrs_params",
                     "rebuild_learner_card_cache", "scheduled_fsrs_optimization",
                     "cleanup_abandoned_sessions"):
            assert name in app.tasks


class TestFSRSTasks:
    """Job trigger tasks"""

    def test_process_pending_jobs(self, default_factory, no_broker):
        JobService(default_factory).request_cache_rebuild(LEARNER)

        summary = fsrs_tasks.process_pending_jobs.run()

        assert summary == {"processed": 1, "COMPLETED": 1}

    def test_optimize_request_triggers_processing(self, default_factory, no_broker):
        job = fsrs_tasks.optimize_learner_fsrs_params.run(LEARNER)

        assert job["status"] == JobStatus.PENDING.value
        assert job["job_type"] == "OPTIMIZE_PARAMS"
        no_broker.assert_called_once()

    def test_rebuild_request(self, default_factory, no_broker):
        job = fsrs_tasks.rebuild_learner_card_cache.run(LEARNER, owner_id="admin")

        assert job["job_type"] == "REBUILD_CACHE"
        assert job["owner_id"] == "admin"

    def test_scheduled_optimization(self, default_factory, no_broker):
        result = fsrs_tasks.scheduled_fsrs_optimization.run()

        assert result["status"] == "triggered"
        assert result["jobs_queued"] == 0
        assert result["task_id"] == "task-1"


class TestSessionTasks:
    """Maintenance tasks"""

    def test_cleanup_abandoned_sessions(self, default_factory):
        pool = StaticCardPoolProvider({"deck-1": ["A"]})
        with session_scope(default_factory) as db:
            SessionService(db, pool).start_session(LEARNER, "deck-1", now=utcnow() - timedelta(hours=3))

        result = session_tasks.cleanup_abandoned_sessions.run(idle_hours=1)

        assert result["status"] == "success"
        assert result["sessions_abandoned"] == 1
