"""
Study support: review scheduling, quiz generation and study sessions.
"""

from .scheduler import ReviewScheduler, CardReviewStats, apply_review
from .quiz_generator import (
    QuizGenerator,
    Choice,
    CardChoices,
    MultipleChoiceQuestion,
    TrueFalseStatement,
    local_choices,
    default_true_false,
    generate_true_false_batch,
    QuizGeneratorError,
    QuizAPIError,
    QuizValidationError,
    QuizTimeoutError,
)
from .cache_manager import CacheManager
from .session_manager import (
    SessionManager,
    StudyMode,
    SessionStatus,
    next_streak,
    SessionError,
    SessionValidationError,
    SessionNotFoundError,
)

__all__ = [
    'ReviewScheduler',
    'CardReviewStats',
    'apply_review',
    'QuizGenerator',
    'Choice',
    'CardChoices',
    'MultipleChoiceQuestion',
    'TrueFalseStatement',
    'local_choices',
    'default_true_false',
    'generate_true_false_batch',
    'QuizGeneratorError',
    'QuizAPIError',
    'QuizValidationError',
    'QuizTimeoutError',
    'CacheManager',
    'SessionManager',
    'StudyMode',
    'SessionStatus',
    'next_streak',
    'SessionError',
    'SessionValidationError',
    'SessionNotFoundError',
]
