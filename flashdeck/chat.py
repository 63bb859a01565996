import os
import time
from typing import List, Dict, Optional

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from openai import OpenAIError, APITimeoutError

from flashdeck.utils import get_logger, log_llm_call, get_openai_client, OpenAIClientError
from flashdeck.utils.openai_client import usage_tokens, message_content

LOG = get_logger()

OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
CHAT_MAX_TOKENS = int(os.getenv('CHAT_MAX_TOKENS', '1000'))
CHAT_TEMPERATURE = float(os.getenv('CHAT_TEMPERATURE', '0.7'))
OPENAI_RETRY_ATTEMPTS = int(os.getenv('OPENAI_RETRY_ATTEMPTS', '3'))
CHAT_ROLES = ('system', 'user', 'assistant')


class ChatError(Exception):
    pass


class ChatAPIError(ChatError):
    pass


class ChatTimeoutError(ChatError):
    pass


class ChatValidationError(ChatError):
    pass


@retry(stop=stop_after_attempt(OPENAI_RETRY_ATTEMPTS), wait=wait_exponential(multiplier=1, max=10), retry=retry_if_exception_type((ChatAPIError, ChatTimeoutError)), reraise=True)
def chat_completion(messages: List[Dict[str, str]], request_id: Optional[str] = None) -> str:
    if not messages:
        raise ChatValidationError('messages must not be empty')
    for m in messages:
        if m.get('role') not in CHAT_ROLES or not isinstance(m.get('content'), str):
            raise ChatValidationError('each message needs a role (system|user|assistant) and string content')
    try:
        client = get_openai_client()
    except OpenAIClientError as e:
        raise ChatError(str(e)) from e
    start = time.time()
    try:
        resp = client.chat.completions.create(model=OPENAI_MODEL, messages=messages, temperature=CHAT_TEMPERATURE, max_tokens=CHAT_MAX_TOKENS)
    except APITimeoutError as e:
        LOG.exception('chat_timeout', exc_info=True)
        raise ChatTimeoutError(str(e)) from e
    except OpenAIError as e:
        LOG.exception('chat_api_error', exc_info=True)
        raise ChatAPIError(str(e)) from e
    prompt_tokens, completion_tokens = usage_tokens(resp)
    log_llm_call(request_id, OPENAI_MODEL, prompt_tokens, completion_tokens, int((time.time() - start) * 1000))
    return message_content(resp)
