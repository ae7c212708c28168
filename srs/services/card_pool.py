"""
Card Pool Providers

Resolve a deck (or unit) into the card ids a learner may study. Deck
contents and access control belong to the surrounding application; the
scheduler only needs this lookup at session start.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from sqlalchemy.orm import Session

from srs.core.exceptions import NotFoundError
from srs.services.card_store import CardStore


class CardPoolProvider(Protocol):
    def get_card_ids(self, learner_id: str, deck_id: str) -> List[str]:
        """
        Card ids in scope for ``deck_id``

        Raises:
            NotFoundError: Unknown deck or the learner has no access to it
        """
        ...


class DeckCardPoolProvider:
    """Cards already granted to the learner through the deck"""

    def __init__(self, db: Session, review_type: Optional[str] = None):
        self.store = CardStore(db)
        self.review_type = review_type

    def get_card_ids(self, learner_id: str, deck_id: str) -> List[str]:
        card_ids = self.store.card_ids_for_deck(learner_id, deck_id, self.review_type)
        if not card_ids:
            raise NotFoundError(f"Learner {learner_id} has no cards in deck {deck_id}")
        return card_ids


class StaticCardPoolProvider:
    """
    In-memory deck contents with an optional access list

    Args:
        decks: deck id -> card ids
        access: deck id -> learner ids allowed (deck open to everyone when absent)
    """

    def __init__(
        self,
        decks: Mapping[str, Iterable[str]],
        access: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.decks: Dict[str, List[str]] = {k: list(v) for k, v in decks.items()}
        self.access = {k: set(v) for k, v in (access or {}).items()}

    def get_card_ids(self, learner_id: str, deck_id: str) -> List[str]:
        if deck_id not in self.decks:
            raise NotFoundError(f"Deck {deck_id} not found")
        allowed = self.access.get(deck_id)
        if allowed is not None and learner_id not in allowed:
            raise NotFoundError(f"Learner {learner_id} has no access to deck {deck_id}")
        return list(self.decks[deck_id])
