import os
import sys
import logging
import pathlib
import contextvars
from logging.handlers import RotatingFileHandler
from pythonjsonlogger import jsonlogger

_request_ctx_var = contextvars.ContextVar('request_ctx', default={})


def set_request_context(request_id: str, user_id: str = None):
    _request_ctx_var.set({'request_id': request_id, 'user_id': user_id})


def get_request_context():
    return _request_ctx_var.get()


def _inject_request_context(record):
    ctx = get_request_context()
    if not hasattr(record, 'request_id') or record.request_id is None:
        record.request_id = ctx.get('request_id')
    if not hasattr(record, 'user_id') or record.user_id is None:
        record.user_id = ctx.get('user_id')
    return True


def get_logger(name: str = 'flashdeck'):
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')
    LOG_FILE_PATH = os.getenv('LOG_FILE_PATH', 'logs')
    LOG_MAX_SIZE = int(os.getenv('LOG_MAX_SIZE', str(10 * 1024 * 1024)))
    LOG_MAX_FILES = int(os.getenv('LOG_MAX_FILES', '7'))
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'true').lower() in ('1', 'true', 'yes')

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL.upper())

    if LOG_FORMAT == 'json':
        fmt = jsonlogger.JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s')
    else:
        fmt = logging.Formatter('%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s')

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    if LOG_TO_FILE:
        # relative paths resolve against the working directory for local dev
        log_path = pathlib.Path(LOG_FILE_PATH)
        if not log_path.is_absolute():
            log_path = pathlib.Path(os.getcwd()) / log_path
        log_path.mkdir(parents=True, exist_ok=True)

        combined = RotatingFileHandler(log_path / 'combined.log', maxBytes=LOG_MAX_SIZE, backupCount=LOG_MAX_FILES)
        combined.setFormatter(fmt)
        logger.addHandler(combined)

        errors = RotatingFileHandler(log_path / 'error.log', maxBytes=LOG_MAX_SIZE, backupCount=LOG_MAX_FILES)
        errors.setLevel(logging.ERROR)
        errors.setFormatter(fmt)
        logger.addHandler(errors)

    f = logging.Filter()
    f.filter = _inject_request_context
    logger.addFilter(f)

    logging.captureWarnings(True)

    return logger


def log_request(request_id: str, method: str, path: str, status_code: int, duration_ms: float, ip: str = None):
    logger = get_logger()
    logger.info('http_request', extra={'request_id': request_id, 'method': method, 'path': path, 'status_code': status_code, 'duration_ms': duration_ms, 'ip': ip})


def log_error(error: Exception, context: dict = None):
    logger = get_logger()
    logger.exception('error', exc_info=error, extra=context or {})


def log_llm_call(request_id: str, model: str, prompt_tokens: int, completion_tokens: int, duration_ms: float, cost: float = None, streamed: bool = False):
    logger = get_logger()
    logger.info('llm_call', extra={
        'request_id': request_id,
        'model': model,
        'prompt_tokens': prompt_tokens,
        'completion_tokens': completion_tokens,
        'duration_ms': duration_ms,
        'cost': cost,
        'streamed': streamed,
    })


def log_flashcard_generation(request_id: str, flashcard_count: int, language: str, complexity: str, duration_ms: float, streamed: bool = False):
    logger = get_logger()
    logger.info('flashcard_generation', extra={
        'request_id': request_id,
        'flashcard_count': flashcard_count,
        'language': language,
        'complexity': complexity,
        'duration_ms': duration_ms,
        'streamed': streamed,
    })


def log_quiz_generation(request_id: str, card_count: int, quiz_type: str, duration_ms: float, cache_hit: bool = False, fallback_used: bool = False):
    logger = get_logger()
    logger.info('quiz_generation', extra={
        'request_id': request_id,
        'card_count': card_count,
        'quiz_type': quiz_type,
        'duration_ms': duration_ms,
        'cache_hit': cache_hit,
        'fallback_used': fallback_used,
    })


def log_review(session_id: str, card_id: str, correct: bool, difficulty: float, due_date: str):
    logger = get_logger()
    logger.info('card_review', extra={
        'session_id': session_id,
        'card_id': card_id,
        'correct': correct,
        'difficulty': difficulty,
        'due_date': due_date,
    })


def log_ingest(request_id: str, source: str, text_length: int, duration_ms: float, details: dict = None):
    logger = get_logger()
    logger.info('ingest', extra={
        'request_id': request_id,
        'source': source,
        'text_length': text_length,
        'duration_ms': duration_ms,
        'details': details or {},
    })
