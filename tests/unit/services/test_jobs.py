"""
Tests for the background job queue
"""
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from loguru import logger
from sqlalchemy.exc import IntegrityError

from conftest import LEARNER, NOW, CardFactory
from srs.core.database import session_scope, utcnow
from srs.core.exceptions import InvalidStageError, JobCancelledError, NotFoundError
from srs.models.jobs import JobStatus, JobType, OptimizationJob
from srs.models.spaced_repetition import LearnerParameters
from srs.services.jobs import JobService
from srs.services.review_recorder import ReviewRecorder


def seed_reviews(session_factory, learner_id, count):
    with session_scope(session_factory) as db:
        CardFactory(db).create("c1", learner_id=learner_id)
        recorder = ReviewRecorder(db)
        for i in range(count):
            recorder.record_review(learner_id, "c1", 3, now=NOW + timedelta(days=10 * i))


def fake_optimizer(behaviour):
    optimizer = MagicMock()
    optimizer.optimize_parameters.side_effect = behaviour
    return optimizer


@pytest.fixture
def jobs(session_factory):
    return JobService(session_factory)


class TestSubmission:
    """Requests are idempotent per learner"""

    def test_request_returns_active_job(self, jobs):
        first = jobs.request_optimization(LEARNER)
        second = jobs.request_optimization(LEARNER)
        rebuild = jobs.request_cache_rebuild(LEARNER)

        assert first.id == second.id == rebuild.id
        assert rebuild.job_type == JobType.OPTIMIZE_PARAMS.value
        assert first.status == JobStatus.PENDING.value
        assert first.owner_id == LEARNER
        assert len(jobs.list_jobs()) == 1

    def test_learners_are_independent(self, jobs):
        assert jobs.request_optimization("a").id != jobs.request_optimization("b").id

    def test_new_job_after_previous_finished(self, jobs):
        first = jobs.request_optimization(LEARNER)
        jobs.process_pending_jobs()

        second = jobs.request_cache_rebuild(LEARNER, owner_id="admin")

        assert second.id != first.id
        assert second.job_type == JobType.REBUILD_CACHE.value
        assert second.owner_id == "admin"

    def test_one_active_job_per_learner_in_schema(self, session_factory):
        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as db:
                for _ in range(2):
                    db.add(OptimizationJob(owner_id="u", learner_id="u", job_type="OPTIMIZE_PARAMS",
                                           review_type="VOCABULARY", status="PENDING"))
                db.flush()

    def test_finished_jobs_do_not_count_as_active(self, session_factory):
        with session_scope(session_factory) as db:
            db.add(OptimizationJob(owner_id="u", learner_id="u", job_type="OPTIMIZE_PARAMS",
                                   review_type="VOCABULARY", status="COMPLETED"))
            db.add(OptimizationJob(owner_id="u", learner_id="u", job_type="OPTIMIZE_PARAMS",
                                   review_type="VOCABULARY", status="PENDING"))

        with session_scope(session_factory) as db:
            assert db.query(OptimizationJob).count() == 2


class TestStatusTransitions:
    """Job status only moves forward"""

    def test_forward_moves(self):
        job = OptimizationJob(status=JobStatus.PENDING.value)
        job.status = JobStatus.RUNNING.value
        job.status = JobStatus.COMPLETED.value
        assert job.status == "COMPLETED"

    @pytest.mark.parametrize(
        "start,target",
        [("PENDING", "COMPLETED"), ("COMPLETED", "RUNNING"), ("FAILED", "PENDING"), ("SKIPPED", "RUNNING")],
    )
    def test_backward_moves_rejected(self, start, target):
        job = OptimizationJob(status=start)
        with pytest.raises(InvalidStageError):
            job.status = target


class TestProcessing:
    """Tests for claiming and running jobs"""

    def test_nothing_pending(self, jobs):
        assert jobs.process_pending_jobs() == {"processed": 0}

    def test_insufficient_data_skipped(self, jobs):
        job = jobs.request_optimization(LEARNER)

        summary = jobs.process_pending_jobs()

        assert summary == {"processed": 1, "SKIPPED": 1}
        finished = jobs.get_job(job.id)
        assert finished.status == JobStatus.SKIPPED.value
        assert finished.result == {"sample_size": 0, "required": 50}
        assert finished.started_at is not None
        assert finished.finished_at is not None

    def test_failure_isolated(self, session_factory):
        params = MagicMock()
        params.to_dict.return_value = {"loss": 0.3}

        def optimize(learner_id, review_type, should_stop=None):
            if learner_id == "a":
                raise RuntimeError("boom")
            return params

        jobs = JobService(session_factory, optimizer=fake_optimizer(optimize))
        failing = jobs.request_optimization("a")
        passing = jobs.request_optimization("b")

        summary = jobs.process_pending_jobs()

        assert summary == {"processed": 2, "FAILED": 1, "COMPLETED": 1}
        assert jobs.get_job(failing.id).error == "RuntimeError: boom"
        assert jobs.get_job(passing.id).result == {"loss": 0.3}
        assert jobs.get_job(passing.id).status == JobStatus.COMPLETED.value

    def test_job_calls_are_logged(self, jobs):
        records = []
        sink_id = logger.add(lambda message: records.append(message.record["message"]), level="DEBUG")
        try:
            jobs.request_cache_rebuild(LEARNER)
            jobs.process_pending_jobs()
        finally:
            logger.remove(sink_id)

        assert any(m.startswith("Calling run_job") for m in records)
        assert "rebuild_cache completed successfully" in records
        assert "run_job completed successfully" in records

    def test_stale_running_job_reaped(self, jobs, session_factory):
        job = jobs.request_optimization(LEARNER)
        [claimed] = jobs._claim(10)
        # Worker dies before running the job
        with session_scope(session_factory) as db:
            db.query(OptimizationJob).filter(OptimizationJob.id == claimed).one().started_at = utcnow() - timedelta(hours=3)

        assert jobs.process_pending_jobs() == {"processed": 0, "reaped": 1}

        dead = jobs.get_job(job.id)
        assert dead.status == JobStatus.FAILED.value
        assert dead.error == "worker lost"
        assert jobs.request_optimization(LEARNER).id != job.id

    def test_recent_running_job_left_alone(self, jobs):
        job = jobs.request_optimization(LEARNER)
        jobs._claim(10)

        assert jobs.reap_stale_jobs() == 0
        assert jobs.get_job(job.id).status == JobStatus.RUNNING.value

    def test_late_outcome_of_reaped_job_dropped(self, jobs):
        job = jobs.request_optimization(LEARNER)
        jobs._claim(10)
        assert jobs.reap_stale_jobs(timeout_minutes=-1) == 1

        jobs._finish(job.id, JobStatus.COMPLETED, result={})

        assert jobs.get_job(job.id).status == JobStatus.FAILED.value

    def test_cache_rebuild(self, jobs):
        job = jobs.request_cache_rebuild(LEARNER)

        jobs.process_pending_jobs()

        finished = jobs.get_job(job.id)
        assert finished.status == JobStatus.COMPLETED.value
        assert finished.result == {"cards_rebuilt": 0, "batches": 0}

    def test_limit(self, jobs):
        for learner_id in ("a", "b", "c"):
            jobs.request_cache_rebuild(learner_id)

        assert jobs.process_pending_jobs(limit=2)["processed"] == 2
        assert len(jobs.list_jobs(status=JobStatus.PENDING)) == 1

    def test_timeout(self, session_factory):
        def slow(learner_id, review_type, should_stop=None):
            time.sleep(0.05)
            if should_stop():
                raise JobCancelledError("stopped")

        jobs = JobService(session_factory, optimizer=fake_optimizer(slow))
        job = jobs.request_optimization(LEARNER)

        jobs.process_pending_jobs(timeout_seconds=0.01)

        finished = jobs.get_job(job.id)
        assert finished.status == JobStatus.FAILED.value
        assert finished.error == "Timed out after 0.01s"


class TestCancellation:
    """Tests for cancel_job"""

    def test_cancel_pending(self, jobs):
        job = jobs.request_optimization(LEARNER)

        cancelled = jobs.cancel_job(job.id)

        assert cancelled.status == JobStatus.FAILED.value
        assert cancelled.error == "cancelled"
        assert jobs.process_pending_jobs() == {"processed": 0}

    def test_cancel_running(self, session_factory):
        def cooperative(learner_id, review_type, should_stop=None):
            if should_stop():
                raise JobCancelledError("stopped")
            return MagicMock(to_dict=MagicMock(return_value={}))

        jobs = JobService(session_factory, optimizer=fake_optimizer(cooperative))
        job = jobs.request_optimization(LEARNER)
        [claimed] = jobs._claim(10)

        flagged = jobs.cancel_job(claimed)
        assert flagged.status == JobStatus.RUNNING.value
        assert flagged.cancel_requested is True

        assert jobs.run_job(job.id) == JobStatus.FAILED
        assert jobs.get_job(job.id).error == "cancelled"

    def test_cancel_finished_is_noop(self, jobs):
        job = jobs.request_optimization(LEARNER)
        jobs.process_pending_jobs()

        assert jobs.cancel_job(job.id).status == JobStatus.SKIPPED.value

    def test_cancel_missing(self, jobs):
        with pytest.raises(NotFoundError):
            jobs.cancel_job(12345)


class TestQueries:
    """Tests for job listing and scheduled sweeps"""

    def test_get_missing(self, jobs):
        with pytest.raises(NotFoundError):
            jobs.get_job(12345)

    def test_list_filters(self, jobs):
        jobs.request_optimization("a", owner_id="tutor")
        jobs.request_optimization("b")
        jobs.cancel_job(jobs.request_optimization("c").id)

        assert [j.learner_id for j in jobs.list_jobs(owner_id="tutor")] == ["a"]
        assert [j.learner_id for j in jobs.list_jobs(learner_id="b")] == ["b"]
        assert [j.learner_id for j in jobs.list_jobs(status=JobStatus.FAILED)] == ["c"]
        assert len(jobs.list_jobs(limit=2)) == 2

    def test_request_stale_optimizations(self, jobs, session_factory):
        seed_reviews(session_factory, "stale", 3)
        seed_reviews(session_factory, "fresh", 3)
        seed_reviews(session_factory, "few", 1)
        with session_scope(session_factory) as db:
            params = db.query(LearnerParameters).filter(LearnerParameters.learner_id == "fresh").one()
            params.last_optimized_at = NOW - timedelta(days=1)

        queued = jobs.request_stale_optimizations(now=NOW, min_reviews=3)

        assert [job.learner_id for job in queued] == ["stale"]
        assert queued[0].job_type == JobType.OPTIMIZE_PARAMS.value
