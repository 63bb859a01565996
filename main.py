import os
import json
import time
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings
from fastapi import FastAPI, Request, Response, Body, File, UploadFile, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from flashdeck.flashcards import (
    FlashcardGenerator,
    FlashcardDraft,
    MalformedResponse,
    parse_generation_payload,
    sanitize_rich_text,
    FlashcardGeneratorError,
    FlashcardAPIError,
    FlashcardValidationError,
    FlashcardTimeoutError,
)
from flashdeck.study import (
    QuizGenerator,
    CacheManager,
    SessionManager,
    local_choices,
    QuizGeneratorError,
    QuizAPIError,
    QuizValidationError,
    QuizTimeoutError,
    SessionValidationError,
    SessionNotFoundError,
)
from flashdeck.storage import Repository, RepositoryError, NotFoundError, RepositoryValidationError
from flashdeck.ingest import (
    MediaProcessor,
    extract_document_text,
    detect_kind,
    fetch_website_text,
    fetch_youtube_text,
    IngestError,
    UnsupportedFileType,
    EmptyDocumentError,
    DocumentParseError,
    WebFetchError,
    InvalidURLError,
    MediaProcessingError,
    MediaAPIError,
    MediaTimeoutError,
)
from flashdeck.chat import chat_completion, ChatError, ChatAPIError, ChatTimeoutError, ChatValidationError
from flashdeck.utils import (
    get_logger,
    set_request_context,
    log_quiz_generation,
    log_ingest,
    FileHandler,
    FileHandlerError,
    FileTooLargeError,
    InvalidFileTypeError,
    FileUploadError,
)

LOG = get_logger()


class Settings(BaseSettings):
    HOST: str = os.getenv('HOST', '0.0.0.0')
    PORT: int = int(os.getenv('PORT', '8000'))
    ENVIRONMENT: str = os.getenv('ENVIRONMENT', 'development')
    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')
    CORS_ORIGIN: str = os.getenv('CORS_ORIGIN', '*')
    REDIS_REQUIRED_FOR_READY: bool = os.getenv('REDIS_REQUIRED_FOR_READY', 'false').lower() in ('1', 'true', 'yes')
    OPENAI_REQUIRED_FOR_READY: bool = os.getenv('OPENAI_REQUIRED_FOR_READY', 'false').lower() in ('1', 'true', 'yes')
    S3_REQUIRED_FOR_READY: bool = os.getenv('S3_REQUIRED_FOR_READY', 'false').lower() in ('1', 'true', 'yes')


settings = Settings()

app = FastAPI(title='Flashdeck Service', version='1.0.0', description='Flashcard generation and study service')

origins = [o.strip() for o in settings.CORS_ORIGIN.split(',') if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware('http')
async def add_request_id_and_logging(request: Request, call_next):
    # prefer incoming X-Request-ID header for cross-service tracing
    request_id = request.headers.get('x-request-id') or os.urandom(8).hex()
    user_id = request.headers.get('x-user-id')
    request.state.request_id = request_id
    request.state.user_id = user_id
    set_request_context(request_id, user_id)
    start = time.time()
    LOG.info('http_request_start', extra={'method': request.method, 'path': request.url.path, 'request_id': request_id, 'client': request.client.host if request.client else None})
    try:
        response: Response = await call_next(request)
    except Exception:
        LOG.exception('Unhandled exception in request', exc_info=True)
        body = {'success': False, 'error': 'Internal server error', 'request_id': request_id}
        return JSONResponse(status_code=500, content=body, headers={'X-Request-ID': request_id})
    duration = int((time.time() - start) * 1000)
    LOG.info('http_request_end', extra={'method': request.method, 'path': request.url.path, 'status_code': response.status_code, 'duration_ms': duration, 'request_id': request_id})
    response.headers['X-Request-ID'] = request_id
    return response


def _request_id(fastapi_request: Request) -> str:
    return getattr(fastapi_request.state, 'request_id', None) or os.urandom(8).hex()


def _error(status_code: int, error: str, request_id: str, details: Optional[str] = None) -> JSONResponse:
    content = {'success': False, 'error': error, 'request_id': request_id}
    if details is not None:
        content['details'] = details
    return JSONResponse(status_code=status_code, content=content)


def _parse_deck_ids(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    try:
        return [int(p) for p in raw.split(',') if p.strip()]
    except ValueError:
        raise SessionValidationError('deck_id must be a comma-separated list of integers')


@app.get('/health')
async def health():
    return {'status': 'ok', 'timestamp': datetime.now(timezone.utc).isoformat(), 'service': 'flashdeck'}


def _check_redis():
    try:
        repo = Repository.get_instance()
        if repo.backend == 'memory':
            return 'warn: in-memory store'
        return 'ok' if repo.ping() else 'error: redis ping failed'
    except RepositoryError as e:
        return f'error: {str(e)}'


def _check_s3():
    try:
        import boto3
        bucket = os.getenv('AWS_S3_BUCKET')
        if not bucket:
            return 'warn: no bucket configured'
        s3 = boto3.client('s3', region_name=os.getenv('AWS_REGION'))
        s3.head_bucket(Bucket=bucket)
        return 'ok'
    except Exception as e:
        return f'error: {str(e)}'


def _check_openai():
    try:
        key = os.getenv('OPENAI_API_KEY')
        if not key:
            if settings.OPENAI_REQUIRED_FOR_READY:
                return 'error: no openai key'
            return 'warn: no openai key'
        import requests
        resp = requests.get('https://api.openai.com/v1/models', headers={'Authorization': f'Bearer {key}'}, timeout=5)
        if resp.status_code == 200:
            return 'ok'
        return f'error: openai status {resp.status_code}'
    except Exception as e:
        return f'error: {str(e)}'


@app.get('/ready')
async def ready():
    services = {'redis': _check_redis(), 's3': _check_s3(), 'openai': _check_openai()}
    ready_ok = True
    if settings.REDIS_REQUIRED_FOR_READY and not services['redis'].startswith('ok'):
        ready_ok = False
    if settings.S3_REQUIRED_FOR_READY and not services['s3'].startswith('ok'):
        ready_ok = False
    if settings.OPENAI_REQUIRED_FOR_READY and services['openai'].startswith('error'):
        ready_ok = False
    status_code = 200 if ready_ok else 503
    return JSONResponse(status_code=status_code, content={'status': 'ready' if ready_ok else 'not ready', 'services': services})


# --------------------------------------------------------------------------
# Request / response models
# --------------------------------------------------------------------------

class FlashcardGenerateResponse(BaseModel):
    success: bool
    flashcards: List[FlashcardDraft]
    metadata: dict
    request_id: str


class SaveFlashcardsRequest(BaseModel):
    flashcards: List[FlashcardDraft] = Field(..., min_length=1)
    deck_id: Optional[int] = Field(None, description='Deck to save into')
    category: Optional[str] = None
    tags: Optional[List[str]] = None


class CardUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    front: Optional[str] = None
    back: Optional[str] = None
    front_rich: Optional[str] = Field(None, alias='frontRich')
    back_rich: Optional[str] = Field(None, alias='backRich')
    tags: Optional[List[str]] = None
    category: Optional[str] = None
    deck_id: Optional[int] = None


class DeckCreateRequest(BaseModel):
    title: str


class DeckUpdateRequest(BaseModel):
    title: Optional[str] = None
    status: Optional[str] = None


class StartSessionRequest(BaseModel):
    deck_ids: List[int]
    mode: str = Field('flashcard', description='flashcard|quiz|truefalse')
    user_id: Optional[str] = None


class SubmitAnswerRequest(BaseModel):
    session_id: str
    card_id: str
    correct: bool
    time_taken: float = Field(0, ge=0, description='Seconds spent on the card')
    difficulty: Optional[str] = Field(None, description='Self assessment label, e.g. ultra_easy|easy|hard|forgot')


class CardBatchRequest(BaseModel):
    card_ids: List[str] = Field(default_factory=list)
    cards: Optional[List[Dict[str, Any]]] = Field(None, description='Inline cards with id, front and back')


class UrlRequest(BaseModel):
    url: str


class ChatRequest(BaseModel):
    messages: List[Dict[str, str]]


# --------------------------------------------------------------------------
# Flashcards
# --------------------------------------------------------------------------

@app.post('/flashcards/generate', response_model=FlashcardGenerateResponse)
async def generate_flashcards_endpoint(fastapi_request: Request, payload: Dict[str, Any] = Body(...)):
    request_id = _request_id(fastapi_request)
    try:
        req = parse_generation_payload(payload)
    except FlashcardValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))

    LOG.info('flashcard_generation_start', extra={'request_id': request_id, 'question_count': req.question_count, 'language': req.language})
    try:
        result = FlashcardGenerator.get_instance().generate(req, request_id=request_id)
        LOG.info('flashcard_generation_complete', extra={'request_id': request_id, 'count': len(result.flashcards)})
        return FlashcardGenerateResponse(success=True, flashcards=result.flashcards, metadata=result.metadata, request_id=request_id)
    except MalformedResponse as e:
        LOG.warning('flashcard_malformed_response', extra={'request_id': request_id, 'raw_length': len(e.raw_text or '')})
        return _error(422, 'Could not parse generated content', request_id, str(e))
    except FlashcardTimeoutError as e:
        LOG.exception('flashcard_timeout', exc_info=True)
        return _error(504, 'LLM timeout', request_id, str(e))
    except FlashcardAPIError as e:
        LOG.exception('flashcard_api_error', exc_info=True)
        return _error(502, 'LLM API error', request_id, str(e))
    except FlashcardGeneratorError as e:
        LOG.exception('flashcard_generation_failed', exc_info=True)
        return _error(500, 'Flashcard generation failed', request_id, str(e))


@app.post('/flashcards/stream')
async def stream_flashcards_endpoint(fastapi_request: Request, payload: Dict[str, Any] = Body(...)):
    request_id = _request_id(fastapi_request)
    try:
        req = parse_generation_payload(payload)
    except FlashcardValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))
    try:
        gen = FlashcardGenerator.get_instance()
        stream = gen.open_stream(req, request_id=request_id)
    except FlashcardTimeoutError as e:
        return _error(504, 'LLM timeout', request_id, str(e))
    except FlashcardAPIError as e:
        return _error(502, 'LLM API error', request_id, str(e))
    except FlashcardGeneratorError as e:
        LOG.exception('flashcard_stream_failed', exc_info=True)
        return _error(500, 'Flashcard generation failed', request_id, str(e))

    def ndjson():
        for event in gen.iter_events(stream, req, request_id=request_id):
            yield json.dumps(event, ensure_ascii=False) + '\n'

    return StreamingResponse(ndjson(), media_type='application/x-ndjson', headers={'X-Request-ID': request_id})


@app.post('/flashcards/save')
async def save_flashcards_endpoint(req: SaveFlashcardsRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    drafts = [{
        'front': d.front,
        'back': d.back,
        'front_rich': sanitize_rich_text(d.front_rich),
        'back_rich': sanitize_rich_text(d.back_rich),
    } for d in req.flashcards]
    try:
        saved = Repository.get_instance().save_flashcards(drafts, deck_id=req.deck_id, category=req.category, tags=req.tags)
        return {'success': True, 'flashcards': saved, 'count': len(saved), 'request_id': request_id}
    except NotFoundError as e:
        return _error(404, 'Deck not found', request_id, str(e))
    except RepositoryValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))
    except RepositoryError as e:
        LOG.exception('flashcard_save_failed', exc_info=True)
        return _error(500, 'Failed to save flashcards', request_id, str(e))


@app.get('/flashcards/list')
async def list_flashcards_endpoint(
    fastapi_request: Request,
    deck_id: Optional[int] = Query(None),
    category: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    request_id = _request_id(fastapi_request)
    try:
        res = Repository.get_instance().list_cards(deck_id=deck_id, category=category, tag=tag, search=search, offset=offset, limit=limit)
        return {'success': True, **res, 'request_id': request_id}
    except RepositoryError as e:
        LOG.exception('flashcard_list_failed', exc_info=True)
        return _error(500, 'Failed to list flashcards', request_id, str(e))


@app.get('/flashcards/{card_id}')
async def get_flashcard_endpoint(card_id: str, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        card = Repository.get_instance().get_card(card_id)
        return {'success': True, 'flashcard': card, 'request_id': request_id}
    except NotFoundError as e:
        return _error(404, 'Flashcard not found', request_id, str(e))


@app.patch('/flashcards/{card_id}')
async def update_flashcard_endpoint(card_id: str, req: CardUpdateRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    fields = req.model_dump(exclude_unset=True)
    for k in ('front_rich', 'back_rich'):
        if k in fields:
            fields[k] = sanitize_rich_text(fields[k])
    try:
        card = Repository.get_instance().update_card(card_id, fields)
        return {'success': True, 'flashcard': card, 'request_id': request_id}
    except NotFoundError as e:
        return _error(404, 'Not found', request_id, str(e))
    except RepositoryValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))


@app.delete('/flashcards/{card_id}')
async def delete_flashcard_endpoint(card_id: str, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        Repository.get_instance().delete_card(card_id)
        return {'success': True, 'request_id': request_id}
    except NotFoundError as e:
        return _error(404, 'Flashcard not found', request_id, str(e))


# --------------------------------------------------------------------------
# Decks
# --------------------------------------------------------------------------

@app.get('/decks')
async def list_decks_endpoint(fastapi_request: Request, status: Optional[str] = Query(None)):
    request_id = _request_id(fastapi_request)
    decks = Repository.get_instance().list_decks(status=status)
    return {'success': True, 'decks': decks, 'request_id': request_id}


@app.post('/decks', status_code=201)
async def create_deck_endpoint(req: DeckCreateRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        deck = Repository.get_instance().create_deck(req.title, user_id=getattr(fastapi_request.state, 'user_id', None))
        return {'success': True, 'deck': deck, 'request_id': request_id}
    except RepositoryValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))


@app.get('/decks/{deck_id}')
async def get_deck_endpoint(deck_id: int, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        return {'success': True, 'deck': Repository.get_instance().get_deck(deck_id), 'request_id': request_id}
    except NotFoundError as e:
        return _error(404, 'Deck not found', request_id, str(e))


@app.patch('/decks/{deck_id}')
async def update_deck_endpoint(deck_id: int, req: DeckUpdateRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        deck = Repository.get_instance().update_deck(deck_id, title=req.title, status=req.status)
        return {'success': True, 'deck': deck, 'request_id': request_id}
    except NotFoundError as e:
        return _error(404, 'Deck not found', request_id, str(e))
    except RepositoryValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))


@app.delete('/decks/{deck_id}')
async def delete_deck_endpoint(deck_id: int, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        Repository.get_instance().delete_deck(deck_id)
        return {'success': True, 'request_id': request_id}
    except NotFoundError as e:
        return _error(404, 'Deck not found', request_id, str(e))


# --------------------------------------------------------------------------
# Study
# --------------------------------------------------------------------------

@app.post('/study/sessions', status_code=201)
async def start_session_endpoint(req: StartSessionRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    user_id = req.user_id or getattr(fastapi_request.state, 'user_id', None)
    try:
        session = SessionManager.get_instance().start_session(req.deck_ids, req.mode, user_id=user_id)
        return {'success': True, 'session': session, 'request_id': request_id}
    except SessionValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))


@app.get('/study/sessions/{session_id}')
async def get_session_endpoint(session_id: str, fastapi_request: Request, deck_id: Optional[str] = Query(None)):
    request_id = _request_id(fastapi_request)
    try:
        session = SessionManager.get_instance().get_session(session_id, deck_ids=_parse_deck_ids(deck_id))
        return {'success': True, 'session': session, 'request_id': request_id}
    except SessionValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))
    except SessionNotFoundError as e:
        return _error(404, 'Session not found', request_id, str(e))


@app.get('/study/sessions/{session_id}/cards')
async def session_cards_endpoint(session_id: str, fastapi_request: Request, deck_id: Optional[str] = Query(None)):
    request_id = _request_id(fastapi_request)
    try:
        cards = SessionManager.get_instance().session_cards(session_id, deck_ids=_parse_deck_ids(deck_id))
        return {'success': True, 'cards': cards, 'request_id': request_id}
    except SessionValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))
    except SessionNotFoundError as e:
        return _error(404, 'Session not found', request_id, str(e))


@app.post('/study/sessions/{session_id}/complete')
async def complete_session_endpoint(session_id: str, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        res = SessionManager.get_instance().complete_session(session_id)
        return {'success': True, **res, 'request_id': request_id}
    except SessionNotFoundError as e:
        return _error(404, 'Session not found', request_id, str(e))


@app.get('/study/sessions/{session_id}/result')
async def session_result_endpoint(session_id: str, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        res = SessionManager.get_instance().session_result(session_id)
        return {'success': True, 'result': res, 'request_id': request_id}
    except SessionNotFoundError as e:
        return _error(404, 'Session not found', request_id, str(e))


@app.post('/study/answers')
async def submit_answer_endpoint(req: SubmitAnswerRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        res = SessionManager.get_instance().submit_answer(req.session_id, req.card_id, req.correct, time_taken=req.time_taken, difficulty=req.difficulty)
        return {'success': True, **res, 'request_id': request_id}
    except SessionValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))
    except RepositoryError as e:
        LOG.exception('submit_answer_failed', exc_info=True)
        return _error(500, 'Failed to record answer', request_id, str(e))


@app.get('/study/cards/{card_id}/choices')
async def card_choices_endpoint(card_id: str, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    repo = Repository.get_instance()
    try:
        card = repo.get_card(card_id)
    except NotFoundError as e:
        return _error(404, 'Flashcard not found', request_id, str(e))
    others = repo.cards_for_decks([card['deck_id']]) if card.get('deck_id') is not None else []
    choices = local_choices(card, others)
    return {'success': True, 'question': card['front'], 'choices': [c.model_dump() for c in choices], 'request_id': request_id}


@app.get('/study/cards/{card_id}/multiple-choice')
async def card_multiple_choice_endpoint(card_id: str, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    repo = Repository.get_instance()
    try:
        card = repo.get_card(card_id)
    except NotFoundError as e:
        return _error(404, 'Flashcard not found', request_id, str(e))
    context = repo.cards_for_decks([card['deck_id']]) if card.get('deck_id') is not None else []
    start = time.time()
    try:
        q = QuizGenerator.get_instance().multiple_choice(card, context, request_id=request_id)
        log_quiz_generation(request_id, 1, 'multiple_choice', int((time.time() - start) * 1000))
        return {'success': True, **q.model_dump(), 'request_id': request_id}
    except QuizValidationError as e:
        LOG.exception('quiz_validation_error', exc_info=True)
        return _error(422, 'Validation failed', request_id, str(e))
    except QuizTimeoutError as e:
        LOG.exception('quiz_timeout', exc_info=True)
        return _error(504, 'LLM timeout', request_id, str(e))
    except QuizAPIError as e:
        LOG.exception('quiz_api_error', exc_info=True)
        return _error(502, 'LLM API error', request_id, str(e))
    except QuizGeneratorError as e:
        LOG.exception('quiz_generation_failed', exc_info=True)
        return _error(500, 'Quiz generation failed', request_id, str(e))


def _cards_with_deck_titles(card_ids: List[str]) -> List[Dict[str, Any]]:
    repo = Repository.get_instance()
    titles: Dict[Any, Optional[str]] = {}
    cards = []
    for c in repo.cards_by_ids(card_ids):
        deck_id = c.get('deck_id')
        if deck_id is not None and deck_id not in titles:
            try:
                titles[deck_id] = repo.get_deck(deck_id, include_deleted=True)['title']
            except NotFoundError:
                titles[deck_id] = None
        cards.append({**c, 'deck_title': titles.get(deck_id)})
    return cards


@app.post('/study/multiple-choice/batch')
async def multiple_choice_batch_endpoint(req: CardBatchRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    if not req.card_ids:
        return _error(400, 'Invalid request', request_id, 'card_ids must not be empty')
    cards = _cards_with_deck_titles(req.card_ids)
    if not cards:
        return _error(404, 'Flashcards not found', request_id)
    cache = CacheManager.get_instance()
    start = time.time()
    cached = cache.get_quiz('mc', cards)
    if cached is not None:
        log_quiz_generation(request_id, len(cards), 'multiple_choice', int((time.time() - start) * 1000), cache_hit=True)
        return {'success': True, 'cards': cached, 'request_id': request_id}
    try:
        result = [c.model_dump() for c in QuizGenerator.get_instance().multiple_choice_batch(cards, request_id=request_id)]
        cache.set_quiz('mc', cards, result)
        log_quiz_generation(request_id, len(cards), 'multiple_choice', int((time.time() - start) * 1000))
        return {'success': True, 'cards': result, 'request_id': request_id}
    except QuizValidationError as e:
        LOG.exception('quiz_validation_error', exc_info=True)
        return _error(422, 'Validation failed', request_id, str(e))
    except QuizTimeoutError as e:
        LOG.exception('quiz_timeout', exc_info=True)
        return _error(504, 'LLM timeout', request_id, str(e))
    except QuizAPIError as e:
        LOG.exception('quiz_api_error', exc_info=True)
        return _error(502, 'LLM API error', request_id, str(e))
    except QuizGeneratorError as e:
        LOG.exception('quiz_generation_failed', exc_info=True)
        return _error(500, 'Quiz generation failed', request_id, str(e))


@app.post('/study/true-false/batch')
async def true_false_batch_endpoint(req: CardBatchRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    if req.cards:
        cards = [c for c in req.cards if c.get('id') is not None]
    elif req.card_ids:
        cards = Repository.get_instance().cards_by_ids(req.card_ids)
    else:
        return _error(400, 'Invalid request', request_id, 'card_ids or cards must be provided')
    if not cards:
        return _error(404, 'Flashcards not found', request_id)
    cache = CacheManager.get_instance()
    start = time.time()
    cached = cache.get_quiz('tf', cards)
    if cached is not None:
        log_quiz_generation(request_id, len(cards), 'true_false', int((time.time() - start) * 1000), cache_hit=True)
        return {'success': True, 'questions': cached, 'request_id': request_id}
    try:
        res, fallback_ids = QuizGenerator.get_instance().true_false_with_fallbacks(cards, request_id=request_id)
    except QuizValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))
    except QuizGeneratorError as e:
        LOG.exception('quiz_generation_failed', exc_info=True)
        return _error(500, 'Quiz generation failed', request_id, str(e))
    questions = {k: [s.model_dump() for s in v] for k, v in res.items()}
    # fallback statements are never cached so the next request asks the model again
    if not fallback_ids:
        cache.set_quiz('tf', cards, questions)
    log_quiz_generation(request_id, len(cards), 'true_false', int((time.time() - start) * 1000), fallback_used=bool(fallback_ids))
    return {'success': True, 'questions': questions, 'request_id': request_id}


# --------------------------------------------------------------------------
# Ingest
# --------------------------------------------------------------------------

@app.post('/ingest/upload')
async def ingest_upload_endpoint(fastapi_request: Request, file: UploadFile = File(...)):
    request_id = _request_id(fastapi_request)
    content = await file.read()
    start = time.time()
    handler = FileHandler()
    temp_path = None
    try:
        temp_path = handler.save_temp_file(content, file.filename)
        LOG.info('ingest_upload_received', extra={'request_id': request_id, 'file_name': file.filename, **handler.get_file_info(temp_path)})
        kind = detect_kind(file.content_type, file.filename)
        if kind == 'audio':
            result = MediaProcessor.get_instance().transcribe_audio(content, file.filename, file.content_type, request_id=request_id)
        elif kind == 'image':
            result = MediaProcessor.get_instance().extract_image_text(content, file.content_type, filename=file.filename, request_id=request_id)
        else:
            result = extract_document_text(content, file.content_type, file.filename)
        log_ingest(request_id, result['kind'], len(result['text']), int((time.time() - start) * 1000), {'file_name': file.filename})
        return {'success': True, **result, 'request_id': request_id}
    except FileTooLargeError as e:
        return _error(413, 'File too large', request_id, str(e))
    except UnsupportedFileType as e:
        return _error(400, 'Unsupported file type', request_id, str(e))
    except EmptyDocumentError as e:
        return _error(400, 'No text extracted', request_id, str(e))
    except DocumentParseError as e:
        return _error(422, 'Document could not be parsed', request_id, str(e))
    except MediaTimeoutError as e:
        return _error(504, 'LLM timeout', request_id, str(e))
    except MediaAPIError as e:
        return _error(502, 'LLM API error', request_id, str(e))
    except (MediaProcessingError, IngestError) as e:
        LOG.exception('ingest_failed', exc_info=True)
        return _error(500, 'File processing failed', request_id, str(e))
    finally:
        if temp_path:
            handler.cleanup_temp_file(temp_path)


@app.post('/ingest/image', status_code=201)
async def ingest_image_endpoint(fastapi_request: Request, file: UploadFile = File(...)):
    request_id = _request_id(fastapi_request)
    content = await file.read()
    try:
        stored = FileHandler().upload_image(content, file.filename, file.content_type)
        return {'success': True, **stored, 'request_id': request_id}
    except InvalidFileTypeError as e:
        return _error(400, 'Only image files are allowed', request_id, str(e))
    except FileTooLargeError as e:
        return _error(413, 'File too large', request_id, str(e))
    except FileUploadError as e:
        return _error(502, 'Image upload failed', request_id, str(e))
    except FileHandlerError as e:
        return _error(500, 'Image upload failed', request_id, str(e))


@app.post('/ingest/youtube')
async def ingest_youtube_endpoint(req: UrlRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    start = time.time()
    try:
        result = fetch_youtube_text(req.url, request_id=request_id)
        log_ingest(request_id, 'youtube', len(result['text']), int((time.time() - start) * 1000), {'video_id': result['video_id']})
        return {'success': True, **result, 'request_id': request_id}
    except InvalidURLError as e:
        return _error(400, 'Invalid YouTube URL', request_id, str(e))


@app.post('/ingest/website')
async def ingest_website_endpoint(req: UrlRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    start = time.time()
    try:
        result = fetch_website_text(req.url, request_id=request_id)
        log_ingest(request_id, 'website', len(result['text']), int((time.time() - start) * 1000), {'url': result['website_info']['url']})
        return {'success': True, **result, 'request_id': request_id}
    except InvalidURLError as e:
        return _error(400, 'Invalid URL', request_id, str(e))
    except WebFetchError as e:
        return _error(502, 'Failed to fetch website', request_id, str(e))


# --------------------------------------------------------------------------
# Chat
# --------------------------------------------------------------------------

@app.post('/chat')
async def chat_endpoint(req: ChatRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        reply = chat_completion(req.messages, request_id=request_id)
        return {'success': True, 'message': {'role': 'assistant', 'content': reply}, 'request_id': request_id}
    except ChatValidationError as e:
        return _error(400, 'Invalid request', request_id, str(e))
    except ChatTimeoutError as e:
        return _error(504, 'LLM timeout', request_id, str(e))
    except ChatAPIError as e:
        return _error(502, 'LLM API error', request_id, str(e))
    except ChatError as e:
        LOG.exception('chat_failed', exc_info=True)
        return _error(500, 'Chat failed', request_id, str(e))


@app.on_event('startup')
async def on_startup():
    LOG.info('Flashdeck service starting', extra={'env': settings.ENVIRONMENT})
    if not os.getenv('AWS_S3_BUCKET'):
        LOG.warning('AWS_S3_BUCKET not set; image uploads will be unavailable')
    try:
        repo = Repository.get_instance()
        LOG.info('Repository ready', extra={'backend': repo.backend})
    except RepositoryError:
        LOG.exception('repository_init_failed', exc_info=True)
    for name, factory in (('FlashcardGenerator', FlashcardGenerator), ('QuizGenerator', QuizGenerator)):
        try:
            factory.get_instance()
            LOG.info(f'{name} warmup triggered')
        except (FlashcardGeneratorError, QuizGeneratorError) as e:
            LOG.warning(f'{name} warmup failed', extra={'error': str(e)})


@app.on_event('shutdown')
async def on_shutdown():
    LOG.info('Flashdeck service shutting down')


if __name__ == '__main__':
    import uvicorn

    workers = int(os.getenv('WORKERS', '1'))
    # uvicorn does not support reload with multiple workers
    if settings.ENVIRONMENT == 'development':
        workers = 1
    reload_enabled = (settings.ENVIRONMENT == 'development') and (workers == 1)

    uvicorn.run(
        'main:app',
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=reload_enabled,
        workers=workers,
    )
