"""
FSRS Parameter Optimization Tasks

The job trigger and the periodic optimization sweep. Optimization and cache
rebuild requests are stored as job rows; ``process_pending_jobs`` is the
only task that executes them.
"""
import logging
from typing import Any, Dict, Optional

from srs.core.database import utcnow
from srs.services.jobs import JobService
from ..celery_app import app, DEFAULT_RETRY_KWARGS

logger = logging.getLogger(__name__)


@app.task(name="process_pending_jobs", bind=True, **DEFAULT_RETRY_KWARGS)
def process_pending_jobs(
    self,
    limit: Optional[int] = None,
    timeout_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Claim and execute PENDING optimization / cache rebuild jobs.

    Args:
        limit: Maximum number of jobs to claim this run
        timeout_seconds: Per-job time limit

    Returns:
        Count of processed jobs per final status
    """
    self.update_state(state="PROCESSING", meta={"step": "claiming_jobs"})
    summary = JobService().process_pending_jobs(limit=limit, timeout_seconds=timeout_seconds)
    if summary["processed"]:
        logger.info(f"Processed pending jobs: {summary}")
    return summary


@app.task(name="optimize_learner_fsrs_params", bind=True, **DEFAULT_RETRY_KWARGS)
def optimize_learner_fsrs_params(
    self,
    learner_id: str,
    review_type: str = "VOCABULARY",
    owner_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Request parameter optimization for a single learner and start processing.

    Returns:
        The (new or already active) job
    """
    job = JobService().request_optimization(learner_id, review_type, owner_id=owner_id)
    process_pending_jobs.delay()
    return job.to_dict()


@app.task(name="rebuild_learner_card_cache", bind=True, **DEFAULT_RETRY_KWARGS)
def rebuild_learner_card_cache(
    self,
    learner_id: str,
    review_type: str = "VOCABULARY",
    owner_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Request a card-state cache rebuild for a learner and start processing."""
    job = JobService().request_cache_rebuild(learner_id, review_type, owner_id=owner_id)
    process_pending_jobs.delay()
    return job.to_dict()


@app.task(name="scheduled_fsrs_optimization")
def scheduled_fsrs_optimization() -> Dict[str, Any]:
    """
    Scheduled task for periodic FSRS optimization.

    Called by Celery beat to queue optimization for every learner whose
    parameters are stale and who has enough reviews.
    """
    logger.info("Running scheduled FSRS optimization")

    jobs = JobService().request_stale_optimizations()
    result = process_pending_jobs.delay()

    return {
        "status": "triggered",
        "jobs_queued": len(jobs),
        "task_id": result.id,
        "triggered_at": utcnow().isoformat(),
    }
