"""Utility subpackage for flashdeck modules"""

from .logger import (
    get_logger,
    log_request,
    log_error,
    log_llm_call,
    log_flashcard_generation,
    log_quiz_generation,
    log_review,
    log_ingest,
    set_request_context,
    get_request_context,
)
from .openai_client import get_openai_client, reset_openai_client, OpenAIClientError
from .file_handler import (
    FileHandler,
    FileHandlerError,
    FileTooLargeError,
    InvalidFileTypeError,
    FileUploadError,
)

__all__ = [
    'get_logger',
    'log_request',
    'log_error',
    'log_llm_call',
    'log_flashcard_generation',
    'log_quiz_generation',
    'log_review',
    'log_ingest',
    'set_request_context',
    'get_request_context',
    'get_openai_client',
    'reset_openai_client',
    'OpenAIClientError',
    'FileHandler',
    'FileHandlerError',
    'FileTooLargeError',
    'InvalidFileTypeError',
    'FileUploadError',
]
