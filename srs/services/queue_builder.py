"""
Due-Card Selector / Queue Builder

Builds the ordered review queue for a learner over a card pool. The queue
is always recomputed from current card state, never advanced in place:
after each review the session rebuilds it from its frozen scope, so a card
rated AGAIN reappears and a card pushed into the future drops out.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from srs.adaptive.fsrs.fsrs_algorithm import State
from srs.core.database import utcnow
from srs.models.spaced_repetition import CardState
from srs.schemas.session import QueueConfig, QueueItem
from srs.services.card_store import CardStore

logger = logging.getLogger(__name__)

_SHORT_TERM_STATES = (State.LEARNING.value, State.RELEARNING.value)


def select_queue(
    states: Sequence[CardState],
    config: QueueConfig,
    now: datetime,
) -> List[QueueItem]:
    """
    Order and cap candidate card states

    Args:
        states: Card states of the pool, in pool (insertion) order
        config: Caps, learn-ahead window and interleaving
        now: Reference time

    Returns:
        Queue items, head first
    """
    horizon = now + timedelta(minutes=config.learn_ahead_minutes)

    new_cards: List[QueueItem] = []
    reviews = []
    for position, state in enumerate(states):
        if state.state == State.NEW.value:
            new_cards.append(QueueItem(card_id=state.card_id, due=now, is_new=True, state=State.NEW))
            continue
        if state.due is None:
            continue
        cutoff = horizon if state.state in _SHORT_TERM_STATES else now
        if state.due <= cutoff:
            reviews.append((state.due, position, state))

    new_cards = new_cards[:config.new_cards_per_session]
    reviews.sort(key=lambda r: (r[0], r[1]))
    review_items = [
        QueueItem(card_id=s.card_id, due=due, is_new=False, state=State(s.state))
        for due, _, s in reviews[:config.max_reviews_per_session]
    ]

    if config.new_card_interval:
        return _interleave(review_items, new_cards, config.new_card_interval)

    # NEW cards count as due now; ties keep pool order (stable sort)
    return sorted(review_items + new_cards, key=lambda item: item.due)


def _interleave(reviews: List[QueueItem], new_cards: List[QueueItem], every: int) -> List[QueueItem]:
    """One NEW card after every ``every`` review cards; leftovers go last"""
    queue: List[QueueItem] = []
    pending_new = list(new_cards)
    for i, item in enumerate(reviews, start=1):
        queue.append(item)
        if i % every == 0 and pending_new:
            queue.append(pending_new.pop(0))
    return queue + pending_new


class QueueBuilder:
    """Read-only queue construction over the card store"""

    def __init__(self, db: Session):
        self.store = CardStore(db)

    def build_queue(
        self,
        learner_id: str,
        card_pool_ids: Sequence[str],
        config: Optional[QueueConfig] = None,
        now: Optional[datetime] = None,
    ) -> List[QueueItem]:
        """
        Build the queue for ``card_pool_ids``

        Cards the learner holds no state for are outside the learner's
        scope and ignored. An empty pool gives an empty queue.
        """
        config = config or QueueConfig()
        now = now or utcnow()
        pool = list(dict.fromkeys(card_pool_ids))
        if not pool:
            return []

        by_id = {s.card_id: s for s in self.store.list_for_cards(learner_id, pool, config.review_type)}
        if len(by_id) < len(pool):
            logger.debug(f"{len(pool) - len(by_id)} pool cards have no state for learner {learner_id}")
        states = [by_id[card_id] for card_id in pool if card_id in by_id]
        return select_queue(states, config, now)

    def refresh_queue(self, learner_id: str, progress, now: Optional[datetime] = None) -> List[QueueItem]:
        """Rebuild a session's queue from its frozen scope"""
        return self.build_queue(learner_id, progress.initial_card_ids, progress.config, now)
