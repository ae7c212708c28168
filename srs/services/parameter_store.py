"""
Learner parameter records
"""
import logging
from datetime import datetime
from typing import Dict, Optional, Sequence, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from srs.adaptive.fsrs.fsrs_algorithm import (
    DEFAULT_PARAMETERS,
    PARAMETERS_VERSION,
    SchedulerConfig,
    validate_parameters,
)
from srs.core.database import translate_conflicts
from srs.core.exceptions import ConcurrencyError
from srs.models.spaced_repetition import LearnerParameters, ReviewType
from srs.services.card_store import review_type_value

logger = logging.getLogger(__name__)


class ParameterStore:
    """Per-learner FSRS coefficients, one record per review type"""

    def __init__(self, db: Session):
        self.db = db

    def get(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str, None] = ReviewType.VOCABULARY,
        lock: bool = False,
    ) -> Optional[LearnerParameters]:
        query = self.db.query(LearnerParameters).filter(
            LearnerParameters.learner_id == learner_id,
            LearnerParameters.review_type == review_type_value(review_type),
        )
        if lock:
            with translate_conflicts(f"parameters of learner {learner_id}"):
                return query.with_for_update().populate_existing().one_or_none()
        return query.one_or_none()

    def get_or_create(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str, None] = ReviewType.VOCABULARY,
    ) -> LearnerParameters:
        """Existing record, or a new one holding the default parameters"""
        params = self.get(learner_id, review_type)
        if params is not None:
            return params

        params = LearnerParameters(
            learner_id=learner_id,
            review_type=review_type_value(review_type),
            w=list(DEFAULT_PARAMETERS),
            parameters_version=PARAMETERS_VERSION,
            sample_size=0,
        )
        self.db.add(params)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise ConcurrencyError(f"Parameters of learner {learner_id} created concurrently") from e
        logger.info(f"Created default FSRS parameters for learner {learner_id} ({params.review_type})")
        return params

    def replace(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str, None],
        w: Sequence[float],
        loss: Optional[float],
        sample_size: int,
        optimized_at: datetime,
        metrics: Optional[Dict[str, float]] = None,
    ) -> LearnerParameters:
        """Overwrite the learner's parameters wholesale (bumps ``version``)"""
        w = validate_parameters(w)
        params = self.get(learner_id, review_type, lock=True)
        if params is None:
            params = self.get_or_create(learner_id, review_type)

        params.w = list(w)
        params.parameters_version = PARAMETERS_VERSION
        params.loss = loss
        params.sample_size = sample_size
        params.metrics = dict(metrics or {})
        params.last_optimized_at = optimized_at

        with translate_conflicts(f"parameters of learner {learner_id}"):
            self.db.flush()
        return params


def scheduler_config_for(params: Optional[LearnerParameters], **overrides) -> SchedulerConfig:
    """Scheduler configuration using a learner's fitted parameters"""
    if params is None:
        return SchedulerConfig.from_settings(**overrides)
    overrides.setdefault("request_retention", params.request_retention)
    return SchedulerConfig.from_settings(parameters=params.w, **overrides)
