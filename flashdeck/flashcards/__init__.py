"""
Flashcard generation: prompt building, streaming extraction of cards from
model output, and rich-text sanitizing.
"""

from .extractor import (
    StreamingCardExtractor,
    FlashcardDraft,
    CurrentDraft,
    DraftStatus,
    ExtractionState,
    MalformedResponse,
    finalize,
)
from .generator import (
    FlashcardGenerator,
    GenerateFlashcardsRequest,
    GenerateFlashcardsResponse,
    Complexity,
    parse_generation_payload,
    generate_flashcards,
    FlashcardGeneratorError,
    FlashcardAPIError,
    FlashcardValidationError,
    FlashcardTimeoutError,
)
from .rich_text import sanitize_rich_text, plain_text, ALLOWED_TAGS

__all__ = [
    'StreamingCardExtractor',
    'FlashcardDraft',
    'CurrentDraft',
    'DraftStatus',
    'ExtractionState',
    'MalformedResponse',
    'finalize',
    'FlashcardGenerator',
    'GenerateFlashcardsRequest',
    'GenerateFlashcardsResponse',
    'Complexity',
    'parse_generation_payload',
    'generate_flashcards',
    'FlashcardGeneratorError',
    'FlashcardAPIError',
    'FlashcardValidationError',
    'FlashcardTimeoutError',
    'sanitize_rich_text',
    'plain_text',
    'ALLOWED_TAGS',
]
