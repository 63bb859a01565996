"""Persistence for decks, flashcards, review stats and study sessions"""

from .repository import (
    Repository,
    RepositoryError,
    NotFoundError,
    RepositoryValidationError,
    DECK_STATUSES,
    utcnow_iso,
)

__all__ = [
    'Repository',
    'RepositoryError',
    'NotFoundError',
    'RepositoryValidationError',
    'DECK_STATUSES',
    'utcnow_iso',
]
