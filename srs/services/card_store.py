"""
Card State Store
Read/write access to per-learner card state
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from srs.adaptive.fsrs.fsrs_algorithm import State
from srs.core.database import translate_conflicts
from srs.core.exceptions import ConcurrencyError, NotFoundError
from srs.models.spaced_repetition import CardState, ReviewType

logger = logging.getLogger(__name__)


def review_type_value(review_type: Union[ReviewType, str, None]) -> str:
    return ReviewType(review_type or ReviewType.VOCABULARY).value


class CardStore:
    """
    Card state repository bound to one database session

    The store never commits; the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def _query(self, learner_id: str, review_type: Union[ReviewType, str, None]):
        return self.db.query(CardState).filter(
            CardState.learner_id == learner_id,
            CardState.review_type == review_type_value(review_type),
        )

    def get(
        self,
        learner_id: str,
        card_id: str,
        review_type: Union[ReviewType, str, None] = ReviewType.VOCABULARY,
        lock: bool = False,
    ) -> Optional[CardState]:
        """
        Fetch one card state

        Args:
            lock: Take a row lock (SELECT ... FOR UPDATE) until the transaction ends
        """
        query = self._query(learner_id, review_type).filter(CardState.card_id == card_id)
        if lock:
            query = query.with_for_update().populate_existing()
            with translate_conflicts(f"card {learner_id}/{card_id}"):
                return query.one_or_none()
        return query.one_or_none()

    def require(
        self,
        learner_id: str,
        card_id: str,
        review_type: Union[ReviewType, str, None] = ReviewType.VOCABULARY,
        lock: bool = False,
    ) -> CardState:
        state = self.get(learner_id, card_id, review_type, lock=lock)
        if state is None:
            raise NotFoundError(
                f"Learner {learner_id} has no {review_type_value(review_type)} state for card {card_id}"
            )
        return state

    def grant(
        self,
        learner_id: str,
        card_ids: Iterable[str],
        deck_id: Optional[str] = None,
        review_type: Union[ReviewType, str, None] = ReviewType.VOCABULARY,
    ) -> List[CardState]:
        """
        Give a learner access to cards by creating NEW states

        Idempotent: cards the learner already has are returned unchanged.
        Returned in the order of ``card_ids``.
        """
        card_ids = list(dict.fromkeys(card_ids))
        existing = {s.card_id: s for s in self.list_for_cards(learner_id, card_ids, review_type)}
        created = 0
        for card_id in card_ids:
            if card_id in existing:
                continue
            state = CardState(
                learner_id=learner_id,
                card_id=card_id,
                deck_id=deck_id,
                review_type=review_type_value(review_type),
                state=State.NEW.value,
                stability=0.0,
                difficulty=0.0,
                lapses=0,
                reps=0,
                learning_step=0,
                elapsed_days=0,
                scheduled_days=0,
            )
            self.db.add(state)
            existing[card_id] = state
            created += 1

        if created:
            try:
                self.db.flush()
            except IntegrityError as e:
                raise ConcurrencyError(f"Cards granted concurrently to learner {learner_id}") from e
            logger.debug(f"Granted {created} new cards to learner {learner_id}")

        return [existing[card_id] for card_id in card_ids]

    def save(self, state: CardState) -> CardState:
        """Flush pending changes; a stale version raises ConcurrencyError"""
        self.db.add(state)
        with translate_conflicts(f"card {state.learner_id}/{state.card_id}"):
            self.db.flush()
        return state

    def list_for_cards(
        self,
        learner_id: str,
        card_ids: Iterable[str],
        review_type: Union[ReviewType, str, None] = ReviewType.VOCABULARY,
        lock: bool = False,
    ) -> List[CardState]:
        """States for ``card_ids`` in insertion order (cards without state are omitted)"""
        card_ids = list(card_ids)
        if not card_ids:
            return []
        query = self._query(learner_id, review_type).filter(CardState.card_id.in_(card_ids)).order_by(CardState.id)
        if lock:
            with translate_conflicts(f"cards of learner {learner_id}"):
                return query.with_for_update().populate_existing().all()
        return query.all()

    def list_due(
        self,
        learner_id: str,
        now: datetime,
        review_type: Union[ReviewType, str, None] = ReviewType.VOCABULARY,
        limit: Optional[int] = None,
    ) -> List[CardState]:
        """Already-reviewed cards with due <= now, most overdue first"""
        query = (
            self._query(learner_id, review_type)
            .filter(CardState.state != State.NEW.value, CardState.due <= now)
            .order_by(CardState.due, CardState.id)
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def list_by_state(
        self,
        learner_id: str,
        states: Iterable[State],
        review_type: Union[ReviewType, str, None] = ReviewType.VOCABULARY,
    ) -> List[CardState]:
        return (
            self._query(learner_id, review_type)
            .filter(CardState.state.in_([State(s).value for s in states]))
            .order_by(CardState.id)
            .all()
        )

    def count_by_state(
        self,
        learner_id: str,
        review_type: Union[ReviewType, str, None] = None,
    ) -> Dict[str, int]:
        """Card counts per state (all four states always present)"""
        query = self.db.query(CardState.state, func.count(CardState.id)).filter(
            CardState.learner_id == learner_id
        )
        if review_type is not None:
            query = query.filter(CardState.review_type == review_type_value(review_type))
        counts = {s.value: 0 for s in State}
        for state, count in query.group_by(CardState.state).all():
            counts[state] = count
        return counts

    def card_ids_for_deck(
        self,
        learner_id: str,
        deck_id: str,
        review_type: Union[ReviewType, str, None] = None,
    ) -> List[str]:
        """Card ids granted to the learner through ``deck_id``, in insertion order"""
        query = self.db.query(CardState.card_id).filter(
            CardState.learner_id == learner_id,
            CardState.deck_id == deck_id,
        )
        if review_type is not None:
            query = query.filter(CardState.review_type == review_type_value(review_type))
        return list(dict.fromkeys(row[0] for row in query.order_by(CardState.id).all()))
