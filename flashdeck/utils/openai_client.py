import os
import threading
from typing import Optional

from openai import OpenAI

from .logger import get_logger

LOG = get_logger()

OPENAI_TIMEOUT = float(os.getenv('OPENAI_TIMEOUT', '60'))

_client: Optional[OpenAI] = None
_lock = threading.Lock()


class OpenAIClientError(Exception):
    pass


def get_openai_client() -> OpenAI:
    """Return the process-wide OpenAI client, building it on first use.

    Retries are disabled on the SDK client; callers wrap their calls with
    tenacity so backoff settings live next to the code that uses them.
    """
    global _client
    if _client is not None:
        return _client
    with _lock:
        if _client is None:
            api_key = os.getenv('OPENAI_API_KEY')
            if not api_key:
                raise OpenAIClientError('OPENAI_API_KEY not set')
            _client = OpenAI(api_key=api_key, timeout=OPENAI_TIMEOUT, max_retries=0, base_url=os.getenv('OPENAI_BASE_URL') or None)
            LOG.info('openai_client_initialized', extra={'timeout': OPENAI_TIMEOUT})
    return _client


def reset_openai_client():
    global _client
    with _lock:
        _client = None


def usage_tokens(resp) -> tuple:
    usage = getattr(resp, 'usage', None)
    if usage is None:
        return 0, 0
    return getattr(usage, 'prompt_tokens', 0) or 0, getattr(usage, 'completion_tokens', 0) or 0


def message_content(resp) -> str:
    choices = getattr(resp, 'choices', None) or []
    if not choices:
        return ''
    message = getattr(choices[0], 'message', None)
    return (getattr(message, 'content', None) or '') if message is not None else ''
