"""
Background job queue

Jobs are rows in the ``jobs`` table. Requests are idempotent per learner
(one active job at a time), the processor claims PENDING rows with
``FOR UPDATE SKIP LOCKED`` so several workers can poll concurrently, and a
failing job is recorded and logged without stopping the others.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from srs.core.config import settings
from srs.core.database import session_scope, utcnow
from srs.core.exceptions import InsufficientDataError, JobCancelledError, NotFoundError
from srs.core.logging import log_function_call
from srs.models.jobs import ACTIVE_STATUSES, JobStatus, JobType, OptimizationJob
from srs.models.spaced_repetition import LearnerParameters, ReviewLog, ReviewType
from srs.services.card_store import review_type_value
from srs.services.optimization import CacheRebuildService, ParameterOptimizationService

logger = logging.getLogger(__name__)


class JobService:
    """
    Submission, processing and cancellation of optimization jobs

    Args:
        session_factory: Session factory (defaults to the process-wide one)
        optimizer: Parameter optimization service
        rebuilder: Cache rebuild service
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        optimizer: Optional[ParameterOptimizationService] = None,
        rebuilder: Optional[CacheRebuildService] = None,
    ):
        self.session_factory = session_factory
        self.optimizer = optimizer or ParameterOptimizationService(session_factory)
        self.rebuilder = rebuilder or CacheRebuildService(session_factory)

    # ==================== Submission ====================

    def _active_job(self, db, learner_id: str) -> Optional[OptimizationJob]:
        return (
            db.query(OptimizationJob)
            .filter(OptimizationJob.learner_id == learner_id, OptimizationJob.status.in_(ACTIVE_STATUSES))
            .one_or_none()
        )

    def _request(
        self,
        job_type: JobType,
        learner_id: str,
        review_type: Union[ReviewType, str],
        owner_id: Optional[str],
    ) -> OptimizationJob:
        try:
            with session_scope(self.session_factory) as db:
                existing = self._active_job(db, learner_id)
                if existing is not None:
                    logger.info(f"Learner {learner_id} already has active job {existing.id} ({existing.job_type})")
                    return existing
                job = OptimizationJob(
                    owner_id=owner_id or learner_id,
                    learner_id=learner_id,
                    job_type=job_type.value,
                    review_type=review_type_value(review_type),
                    status=JobStatus.PENDING.value,
                    cancel_requested=False,
                )
                db.add(job)
                db.flush()
                logger.info(f"Job {job.id} queued: {job_type.value} for learner {learner_id}")
                return job
        except IntegrityError:
            # Lost the race against a concurrent request for the same learner
            with session_scope(self.session_factory) as db:
                existing = self._active_job(db, learner_id)
                if existing is None:
                    raise
                return existing

    def request_optimization(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        owner_id: Optional[str] = None,
    ) -> OptimizationJob:
        """Queue a parameter optimization, or return the learner's active job"""
        return self._request(JobType.OPTIMIZE_PARAMS, learner_id, review_type, owner_id)

    def request_cache_rebuild(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str] = ReviewType.VOCABULARY,
        owner_id: Optional[str] = None,
    ) -> OptimizationJob:
        """Queue a card-state cache rebuild, or return the learner's active job"""
        return self._request(JobType.REBUILD_CACHE, learner_id, review_type, owner_id)

    def request_stale_optimizations(
        self,
        now: Optional[datetime] = None,
        stale_days: Optional[int] = None,
        min_reviews: Optional[int] = None,
    ) -> List[OptimizationJob]:
        """
        Queue optimizations for every learner whose parameters are older than
        ``stale_days`` (or were never fitted) and who has enough reviews
        """
        now = now or utcnow()
        stale_days = settings.OPTIMIZATION_STALE_DAYS if stale_days is None else stale_days
        min_reviews = settings.OPTIMIZER_MIN_REVIEWS if min_reviews is None else min_reviews
        cutoff = now - timedelta(days=stale_days)

        with session_scope(self.session_factory) as db:
            review_counts = (
                db.query(ReviewLog.learner_id, ReviewLog.review_type, func.count(ReviewLog.id))
                .group_by(ReviewLog.learner_id, ReviewLog.review_type)
                .having(func.count(ReviewLog.id) >= min_reviews)
                .all()
            )
            fresh = {
                (p.learner_id, p.review_type)
                for p in db.query(LearnerParameters).filter(
                    LearnerParameters.last_optimized_at.isnot(None),
                    LearnerParameters.last_optimized_at >= cutoff,
                )
            }

        candidates: List[Tuple[str, str]] = [
            (learner_id, review_type)
            for learner_id, review_type, _ in review_counts
            if (learner_id, review_type) not in fresh
        ]
        jobs = [self.request_optimization(learner_id, review_type) for learner_id, review_type in candidates]
        logger.info(f"Queued optimization for {len(jobs)} learners with stale parameters")
        return jobs

    # ==================== Processing ====================

    def _claim(self, limit: int) -> List[int]:
        """Move up to ``limit`` PENDING jobs to RUNNING, oldest first"""
        with session_scope(self.session_factory) as db:
            jobs = (
                db.query(OptimizationJob)
                .filter(OptimizationJob.status == JobStatus.PENDING.value)
                .order_by(OptimizationJob.created_at, OptimizationJob.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
                .all()
            )
            now = utcnow()
            for job in jobs:
                job.status = JobStatus.RUNNING.value
                job.started_at = now
            return [job.id for job in jobs]

    def reap_stale_jobs(self, now: Optional[datetime] = None, timeout_minutes: Optional[int] = None) -> int:
        """
        Fail RUNNING jobs started more than ``timeout_minutes`` ago

        Their worker is assumed lost; failing them frees the learner for new requests.

        Returns:
            Number of jobs failed
        """
        now = now or utcnow()
        timeout_minutes = settings.JOB_RUNNING_TIMEOUT_MINUTES if timeout_minutes is None else timeout_minutes
        cutoff = now - timedelta(minutes=timeout_minutes)

        with session_scope(self.session_factory) as db:
            jobs = (
                db.query(OptimizationJob)
                .filter(
                    OptimizationJob.status == JobStatus.RUNNING.value,
                    OptimizationJob.started_at < cutoff,
                )
                .with_for_update(skip_locked=True)
                .all()
            )
            for job in jobs:
                job.status = JobStatus.FAILED.value
                job.error = "worker lost"
                job.finished_at = now
                logger.warning(f"Job {job.id} running since {job.started_at.isoformat()} marked FAILED (worker lost)")
            return len(jobs)

    def _finish(
        self,
        job_id: int,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        with session_scope(self.session_factory) as db:
            job = db.query(OptimizationJob).filter(OptimizationJob.id == job_id).with_for_update().populate_existing().one()
            if job.status != JobStatus.RUNNING.value:
                logger.warning(f"Job {job_id} is already {job.status}; dropping {status.value} outcome")
                return
            job.status = status.value
            job.result = result
            job.error = error
            job.finished_at = utcnow()

    def _cancel_requested(self, job_id: int) -> bool:
        with session_scope(self.session_factory) as db:
            flag = db.query(OptimizationJob.cancel_requested).filter(OptimizationJob.id == job_id).scalar()
            return bool(flag)

    @log_function_call
    def run_job(self, job_id: int, timeout_seconds: Optional[float] = None) -> JobStatus:
        """
        Execute one claimed (RUNNING) job and record its outcome

        Cancellation and the optional timeout are checked at the optimizer's
        iteration boundaries and between rebuild batches.
        """
        with session_scope(self.session_factory) as db:
            job = db.query(OptimizationJob).filter(OptimizationJob.id == job_id).one()
            job_type, learner_id, review_type = JobType(job.job_type), job.learner_id, job.review_type

        deadline = time.monotonic() + timeout_seconds if timeout_seconds else None
        stop_reason: Dict[str, str] = {}

        def should_stop() -> bool:
            if deadline is not None and time.monotonic() > deadline:
                stop_reason["reason"] = f"Timed out after {timeout_seconds}s"
                return True
            if self._cancel_requested(job_id):
                stop_reason["reason"] = "cancelled"
                return True
            return False

        logger.info(f"Running job {job_id}: {job_type.value} for learner {learner_id}")
        try:
            if job_type == JobType.OPTIMIZE_PARAMS:
                params = self.optimizer.optimize_parameters(learner_id, review_type, should_stop=should_stop)
                result = params.to_dict()
            else:
                result = self.rebuilder.rebuild_cache(learner_id, review_type, should_stop=should_stop)
        except InsufficientDataError as e:
            logger.info(f"Job {job_id} skipped: {e}")
            self._finish(
                job_id,
                JobStatus.SKIPPED,
                result={"sample_size": e.sample_size, "required": e.required},
                error=str(e),
            )
            return JobStatus.SKIPPED
        except JobCancelledError as e:
            reason = stop_reason.get("reason", str(e))
            logger.warning(f"Job {job_id} stopped: {reason}")
            self._finish(job_id, JobStatus.FAILED, error=reason)
            return JobStatus.FAILED
        except Exception as e:
            logger.exception(f"Job {job_id} failed: {e}")
            self._finish(job_id, JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
            return JobStatus.FAILED

        self._finish(job_id, JobStatus.COMPLETED, result=result)
        logger.info(f"Job {job_id} completed")
        return JobStatus.COMPLETED

    def process_pending_jobs(
        self,
        limit: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, int]:
        """
        Claim and run PENDING jobs

        Args:
            limit: Maximum jobs to claim (defaults to JOB_BATCH_SIZE)
            timeout_seconds: Per-job time limit; an overrunning job is FAILED

        Returns:
            Count of processed jobs per final status
        """
        reaped = self.reap_stale_jobs()
        job_ids = self._claim(limit or settings.JOB_BATCH_SIZE)
        summary = {"processed": 0}
        if reaped:
            summary["reaped"] = reaped
        if not job_ids:
            return summary

        logger.info(f"Processing {len(job_ids)} pending jobs")
        for job_id in job_ids:
            status = self.run_job(job_id, timeout_seconds)
            summary["processed"] += 1
            summary[status.value] = summary.get(status.value, 0) + 1
        return summary

    # ==================== Queries ====================

    def cancel_job(self, job_id: int) -> OptimizationJob:
        """
        Cancel a job: PENDING jobs fail immediately, RUNNING jobs stop at
        their next checkpoint. Finished jobs are returned unchanged.
        """
        with session_scope(self.session_factory) as db:
            job = db.query(OptimizationJob).filter(OptimizationJob.id == job_id).with_for_update().populate_existing().one_or_none()
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.status == JobStatus.PENDING.value:
                job.status = JobStatus.FAILED.value
                job.error = "cancelled"
                job.finished_at = utcnow()
                logger.info(f"Job {job_id} cancelled before start")
            elif job.status == JobStatus.RUNNING.value:
                job.cancel_requested = True
                logger.info(f"Cancellation requested for running job {job_id}")
            return job

    def get_job(self, job_id: int) -> OptimizationJob:
        with session_scope(self.session_factory) as db:
            job = db.query(OptimizationJob).filter(OptimizationJob.id == job_id).one_or_none()
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            return job

    def list_jobs(
        self,
        owner_id: Optional[str] = None,
        learner_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> List[OptimizationJob]:
        """Most recent jobs first"""
        with session_scope(self.session_factory) as db:
            query = db.query(OptimizationJob)
            if owner_id is not None:
                query = query.filter(OptimizationJob.owner_id == owner_id)
            if learner_id is not None:
                query = query.filter(OptimizationJob.learner_id == learner_id)
            if status is not None:
                query = query.filter(OptimizationJob.status == JobStatus(status).value)
            return query.order_by(OptimizationJob.created_at.desc(), OptimizationJob.id.desc()).limit(limit).all()
