import os
import json
import time
from enum import Enum
from typing import Optional, List, Dict, Any, Iterator, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from openai import OpenAIError, APITimeoutError

from flashdeck.utils import get_logger, log_llm_call, log_flashcard_generation, get_openai_client, OpenAIClientError
from flashdeck.utils.openai_client import usage_tokens, message_content
from .extractor import StreamingCardExtractor, FlashcardDraft, MalformedResponse
from .rich_text import sanitize_rich_text, ALLOWED_TAGS

LOG = get_logger()


class FlashcardGeneratorError(Exception):
    pass


class FlashcardAPIError(FlashcardGeneratorError):
    pass


class FlashcardValidationError(FlashcardGeneratorError):
    pass


class FlashcardTimeoutError(FlashcardGeneratorError):
    pass


# Config
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
FLASHCARD_MAX_TOKENS = int(os.getenv('FLASHCARD_MAX_TOKENS', '4000'))
FLASHCARD_TEMPERATURE = float(os.getenv('FLASHCARD_TEMPERATURE', '0.5'))
FLASHCARD_MAX_COUNT = int(os.getenv('FLASHCARD_MAX_COUNT', '50'))
FLASHCARD_MAX_TEXT_LENGTH = int(os.getenv('FLASHCARD_MAX_TEXT_LENGTH', '100000'))
FLASHCARD_STREAM_UPDATE_CHARS = int(os.getenv('FLASHCARD_STREAM_UPDATE_CHARS', '48'))
OPENAI_RETRY_ATTEMPTS = int(os.getenv('OPENAI_RETRY_ATTEMPTS', '3'))
OPENAI_RETRY_MULTIPLIER = int(os.getenv('OPENAI_RETRY_MULTIPLIER', '2'))
OPENAI_RETRY_MAX_WAIT = int(os.getenv('OPENAI_RETRY_MAX_WAIT', '10'))


class Complexity(str, Enum):
    SIMPLE = 'simple'
    MEDIUM = 'medium'
    DETAILED = 'detailed'


COMPLEXITY_GUIDE = {
    Complexity.SIMPLE: 'Keep questions and answers short (1-2 sentences). Avoid unnecessary detail.',
    Complexity.MEDIUM: 'Cover the key points with moderate length (2-4 sentences) and include a short example.',
    Complexity.DETAILED: 'Explain thoroughly (4+ sentences) with supporting details, bullet lists and several examples where useful.',
}


class GenerateFlashcardsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., max_length=FLASHCARD_MAX_TEXT_LENGTH)
    question_count: Union[int, str] = Field('auto', alias='questionCount')
    range: Optional[str] = None
    complexity: Complexity = Complexity.MEDIUM
    language: str = 'ja'

    @field_validator('text')
    @classmethod
    def text_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('text must not be empty')
        return v

    @field_validator('question_count')
    @classmethod
    def check_count(cls, v):
        if isinstance(v, str):
            s = v.strip().lower()
            if s in ('auto', 'max'):
                return s
            if not s.isdigit():
                raise ValueError("question_count must be 'auto', 'max' or an integer")
            v = int(s)
        if v < 1 or v > FLASHCARD_MAX_COUNT:
            raise ValueError(f'question_count must be 1-{FLASHCARD_MAX_COUNT}')
        return v

    @field_validator('language')
    @classmethod
    def normalize_language(cls, v):
        return (v or 'ja').strip().lower() or 'ja'


class GenerateFlashcardsResponse(BaseModel):
    flashcards: List[FlashcardDraft]
    metadata: Dict[str, Any] = Field(default_factory=dict)


def parse_generation_payload(payload: Dict[str, Any]) -> GenerateFlashcardsRequest:
    """Build a request from either the plain body or the ``{"prompt": ...}`` wrapper.

    A wrapper whose prompt is a JSON object string is parsed as the request;
    any other prompt string becomes the source text.
    """
    if not isinstance(payload, dict):
        raise FlashcardValidationError('Request body must be a JSON object')
    prompt = payload.get('prompt')
    if prompt:
        body = None
        if isinstance(prompt, str):
            try:
                body = json.loads(prompt)
            except ValueError:
                body = None
        elif isinstance(prompt, dict):
            body = prompt
        payload = body if isinstance(body, dict) else {'text': str(prompt)}
    try:
        return GenerateFlashcardsRequest(**payload)
    except ValueError as e:
        raise FlashcardValidationError(str(e)) from e


class FlashcardGenerator:
    _instance = None

    def __init__(self):
        if not os.getenv('OPENAI_API_KEY'):
            raise FlashcardGeneratorError('OPENAI_API_KEY not set')
        self.model = OPENAI_MODEL
        LOG.info('FlashcardGenerator initialized', extra={'model': self.model})

    @classmethod
    def get_instance(cls) -> 'FlashcardGenerator':
        if cls._instance is None:
            cls._instance = FlashcardGenerator()
        return cls._instance

    def _client(self):
        try:
            return get_openai_client()
        except OpenAIClientError as e:
            raise FlashcardGeneratorError(str(e)) from e

    def _build_prompt(self, req: GenerateFlashcardsRequest) -> str:
        if req.question_count == 'auto':
            count_rule = 'Choose a suitable number of cards for the length and content of the text.'
        elif req.question_count == 'max':
            count_rule = 'Create as many cards as the text supports, covering its content thoroughly.'
        else:
            count_rule = f'Create exactly {req.question_count} cards.'

        if req.language == 'ja':
            language_rule = (
                'Write questions and explanations in Japanese. If the source text is English, do not translate it: '
                'keep English sentences and examples as they are and add the explanations in Japanese, '
                'because the cards are used for learning English.'
            )
        elif req.language == 'en':
            language_rule = (
                'Write every field (front, back, frontRich, backRich) in English only, '
                'translating the source text if it is in another language.'
            )
        else:
            language_rule = f'Write every field in the language with code "{req.language}".'

        return '\n'.join([
            'You are an assistant that creates study flashcards.',
            '',
            'Source text:',
            req.text,
            '',
            f'Scope / topic: {req.range or "the entire text"}',
            f'Number of cards: {count_rule}',
            f'Complexity ({req.complexity.value}): {COMPLEXITY_GUIDE[req.complexity]}',
            f'Language: {language_rule}',
            'For language-learning material, include example sentences in the answers.',
            '',
            'Return only valid JSON of this shape:',
            '{"flashcards": [{"front": "question (plain text)", "back": "answer (plain text)", '
            '"frontRich": "question (HTML)", "backRich": "answer (HTML)"}]}',
            '',
            'front and back are always required plain text. frontRich and backRich use HTML to highlight key terms '
            'with <strong> or <mark>, bullet points with <ul>/<li>, paragraphs with <p>, headings with <h4>/<h5> '
            'and examples with <blockquote>.',
            f'Allowed HTML tags: {", ".join(ALLOWED_TAGS)}',
        ])

    def build_messages(self, req: GenerateFlashcardsRequest) -> List[Dict[str, str]]:
        return [
            {'role': 'system', 'content': 'You generate study flashcards as JSON.'},
            {'role': 'user', 'content': self._build_prompt(req)},
        ]

    @retry(stop=stop_after_attempt(OPENAI_RETRY_ATTEMPTS), wait=wait_exponential(multiplier=OPENAI_RETRY_MULTIPLIER, max=OPENAI_RETRY_MAX_WAIT), retry=retry_if_exception_type((FlashcardAPIError, FlashcardTimeoutError)), reraise=True)
    def _call_openai(self, messages: List[Dict[str, Any]], request_id: Optional[str] = None) -> str:
        start = time.time()
        try:
            resp = self._client().chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=FLASHCARD_TEMPERATURE,
                max_tokens=FLASHCARD_MAX_TOKENS,
                response_format={'type': 'json_object'},
            )
        except APITimeoutError as e:
            LOG.exception('flashcard_timeout', exc_info=True)
            raise FlashcardTimeoutError(str(e)) from e
        except OpenAIError as e:
            LOG.exception('flashcard_api_error', exc_info=True)
            raise FlashcardAPIError(str(e)) from e
        duration_ms = int((time.time() - start) * 1000)
        prompt_tokens, completion_tokens = usage_tokens(resp)
        log_llm_call(request_id, self.model, prompt_tokens, completion_tokens, duration_ms)
        return message_content(resp)

    @retry(stop=stop_after_attempt(OPENAI_RETRY_ATTEMPTS), wait=wait_exponential(multiplier=OPENAI_RETRY_MULTIPLIER, max=OPENAI_RETRY_MAX_WAIT), retry=retry_if_exception_type((FlashcardAPIError, FlashcardTimeoutError)), reraise=True)
    def open_stream(self, req: GenerateFlashcardsRequest, request_id: Optional[str] = None):
        """Start a streaming completion. Only opening the stream is retried."""
        try:
            return self._client().chat.completions.create(
                model=self.model,
                messages=self.build_messages(req),
                temperature=FLASHCARD_TEMPERATURE,
                max_tokens=FLASHCARD_MAX_TOKENS,
                stream=True,
                stream_options={'include_usage': True},
            )
        except APITimeoutError as e:
            LOG.exception('flashcard_stream_timeout', exc_info=True)
            raise FlashcardTimeoutError(str(e)) from e
        except OpenAIError as e:
            LOG.exception('flashcard_stream_api_error', exc_info=True)
            raise FlashcardAPIError(str(e)) from e

    def _sanitize(self, draft: FlashcardDraft) -> FlashcardDraft:
        return draft.model_copy(update={
            'front_rich': sanitize_rich_text(draft.front_rich),
            'back_rich': sanitize_rich_text(draft.back_rich),
        })

    def generate(self, req: GenerateFlashcardsRequest, request_id: Optional[str] = None) -> GenerateFlashcardsResponse:
        start = time.time()
        content = self._call_openai(self.build_messages(req), request_id=request_id)
        drafts = [self._sanitize(d) for d in StreamingCardExtractor().finalize(content)]
        duration_ms = int((time.time() - start) * 1000)
        log_flashcard_generation(request_id or '', len(drafts), req.language, req.complexity.value, duration_ms)
        metadata = {'processing_time_ms': duration_ms, 'model_used': self.model, 'flashcard_count': len(drafts)}
        return GenerateFlashcardsResponse(flashcards=drafts, metadata=metadata)

    def iter_events(self, stream, req: GenerateFlashcardsRequest, request_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Feed a completion stream through an extractor.

        Yields ``progress`` events whenever the extracted state changes, then a
        single ``result`` or ``error`` event. Errors are reported as events so a
        response that has already started streaming is always terminated cleanly.

        The extractor re-reads the whole buffer, so it only runs when a card
        opens or closes or after ``FLASHCARD_STREAM_UPDATE_CHARS`` new characters.
        """
        start = time.time()
        extractor = StreamingCardExtractor()
        buffer = ''
        extracted_len = 0
        last_sent = None
        prompt_tokens = completion_tokens = 0
        try:
            for chunk in stream:
                if getattr(chunk, 'usage', None) is not None:
                    prompt_tokens, completion_tokens = usage_tokens(chunk)
                choices = getattr(chunk, 'choices', None) or []
                if not choices:
                    continue
                delta = getattr(choices[0].delta, 'content', None)
                if not delta:
                    continue
                buffer += delta
                if '{' not in delta and '}' not in delta and len(buffer) - extracted_len < FLASHCARD_STREAM_UPDATE_CHARS:
                    continue
                extracted_len = len(buffer)
                state = extractor.update(buffer).model_dump(mode='json', by_alias=True)
                if state != last_sent:
                    last_sent = state
                    yield {'type': 'progress', **state}
            if extracted_len != len(buffer):
                state = extractor.update(buffer).model_dump(mode='json', by_alias=True)
                if state != last_sent:
                    yield {'type': 'progress', **state}
        except APITimeoutError as e:
            LOG.exception('flashcard_stream_timeout', exc_info=True)
            yield {'type': 'error', 'error': 'LLM timeout', 'details': str(e), 'request_id': request_id}
            return
        except OpenAIError as e:
            LOG.exception('flashcard_stream_api_error', exc_info=True)
            yield {'type': 'error', 'error': 'LLM API error', 'details': str(e), 'request_id': request_id}
            return

        duration_ms = int((time.time() - start) * 1000)
        log_llm_call(request_id, self.model, prompt_tokens, completion_tokens, duration_ms, streamed=True)
        try:
            drafts = [self._sanitize(d) for d in extractor.finalize(buffer)]
        except MalformedResponse as e:
            LOG.warning('flashcard_stream_malformed', extra={'request_id': request_id, 'details': str(e), 'raw_length': len(buffer)})
            yield {'type': 'error', 'error': 'Could not parse generated content', 'details': str(e), 'request_id': request_id}
            return
        log_flashcard_generation(request_id or '', len(drafts), req.language, req.complexity.value, duration_ms, streamed=True)
        yield {
            'type': 'result',
            'flashcards': [d.model_dump(by_alias=True) for d in drafts],
            'metadata': {'processing_time_ms': duration_ms, 'model_used': self.model, 'flashcard_count': len(drafts)},
            'request_id': request_id,
        }

    def stream(self, req: GenerateFlashcardsRequest, request_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        return self.iter_events(self.open_stream(req, request_id=request_id), req, request_id=request_id)


def generate_flashcards(payload: Dict[str, Any], request_id: Optional[str] = None) -> Dict[str, Any]:
    req = parse_generation_payload(payload)
    gen = FlashcardGenerator.get_instance()
    resp = gen.generate(req, request_id=request_id)
    return resp.model_dump(by_alias=True)
