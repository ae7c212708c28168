"""
Session maintenance tasks
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from srs.core.config import settings
from srs.core.database import session_scope, utcnow
from srs.services.session_progress import cleanup_abandoned_sessions as mark_abandoned
from ..celery_app import app, DEFAULT_RETRY_KWARGS

logger = logging.getLogger(__name__)


@app.task(name="cleanup_abandoned_sessions", **DEFAULT_RETRY_KWARGS)
def cleanup_abandoned_sessions(idle_hours: Optional[int] = None) -> Dict[str, Any]:
    """
    Mark sessions idle for more than ``idle_hours`` as ABANDONED.
    """
    idle_hours = idle_hours or settings.SESSION_ABANDON_HOURS
    with session_scope() as db:
        count = mark_abandoned(db, older_than=timedelta(hours=idle_hours))
    logger.info(f"Session cleanup finished: {count} abandoned (idle > {idle_hours}h)")

    return {
        "status": "success",
        "sessions_abandoned": count,
        "completed_at": utcnow().isoformat(),
    }
