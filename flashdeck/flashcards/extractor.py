"""Incremental extraction of flashcards from a streaming model response.

The model is asked to answer with ``{"flashcards": [{"front": ..., "back": ...}, ...]}``
but while the response is streaming the buffer is almost never valid JSON.
``StreamingCardExtractor.update`` re-derives the best available view of the
cards from the whole buffer on every call:

1. strict parse of the JSON span (code fences stripped, one trailing-comma repair),
2. truncation repair: close the open string and brackets of a cut-off buffer,
3. regex scraping of the most recent ``"front"`` / ``"back"`` values.

``finalize`` runs step 1 only and raises ``MalformedResponse`` when the
finished buffer does not hold a usable ``flashcards`` array.
"""

import re
import json
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from flashdeck.utils import get_logger

LOG = get_logger()

FENCE_RE = re.compile(r'```(?:json|JSON)?')
STRING_BODY_RE = re.compile(r'[^"\\]*(?:\\[\s\S][^"\\]*)*')
OPEN_ESCAPE_RE = re.compile(r'(?<!\\)(?:\\\\)*(\\(?:u[0-9a-fA-F]{0,3})?)$')
TRAILING_COMMA_RE = re.compile(r',\s*([}\]])')
FRONT_RE = re.compile(r'["\']front["\']\s*:\s*["\']([^"\']*)["\']')
BACK_RE = re.compile(r'["\']back["\']\s*:\s*["\']([^"\']*)["\']')

_WHITESPACE = ' \t\r\n'


class MalformedResponse(Exception):
    """The finished model response does not contain a usable flashcards array."""

    def __init__(self, message: str, raw_text: str = ''):
        super().__init__(message)
        self.raw_text = raw_text


class DraftStatus(str, Enum):
    FRONT = 'front'
    BACK = 'back'
    COMPLETE = 'complete'


class FlashcardDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    front: str
    back: str
    front_rich: Optional[str] = Field(None, alias='frontRich')
    back_rich: Optional[str] = Field(None, alias='backRich')


class CurrentDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    front: str = ''
    back: str = ''
    status: DraftStatus = DraftStatus.FRONT
    front_rich: Optional[str] = Field(None, alias='frontRich')
    back_rich: Optional[str] = Field(None, alias='backRich')

    def to_draft(self) -> FlashcardDraft:
        return FlashcardDraft(front=self.front, back=self.back, front_rich=self.front_rich, back_rich=self.back_rich)


class ExtractionState(BaseModel):
    completed: List[FlashcardDraft] = Field(default_factory=list)
    current: CurrentDraft = Field(default_factory=CurrentDraft)


def strip_code_fences(text: str) -> str:
    return FENCE_RE.sub('', text or '')


def _loads_with_repair(candidate: str) -> Optional[Any]:
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    try:
        return json.loads(TRAILING_COMMA_RE.sub(r'\1', candidate))
    except ValueError:
        return None


def _object_start(text: str) -> int:
    """Index of the brace opening the ``"flashcards"`` object, else the first brace."""
    key = text.find('"flashcards"')
    if key != -1:
        brace = text.rfind('{', 0, key)
        if brace != -1:
            return brace
    return text.find('{')


def parse_json_object(text: str) -> Optional[Any]:
    """Strictly parse the JSON object embedded in ``text``.

    Tries the span from the opening brace to the last closing brace of the
    buffer, then a raw decode from the opening brace (which tolerates prose
    after the object). Returns ``None`` when nothing parses.
    """
    cleaned = strip_code_fences(text)
    start = _object_start(cleaned)
    if start == -1:
        return None
    end = cleaned.rfind('}')
    if end > start:
        parsed = _loads_with_repair(cleaned[start:end + 1])
        if parsed is not None:
            return parsed
    try:
        parsed, _ = json.JSONDecoder().raw_decode(cleaned[start:])
        return parsed
    except ValueError:
        return None


def _closers(stack: List[Dict[str, Any]]) -> str:
    return ''.join('}' if frame['type'] == '{' else ']' for frame in reversed(stack))


def close_truncated_json(text: str) -> Optional[Tuple[str, Optional[str]]]:
    """Turn a cut-off JSON document into a parseable one.

    Scans from the brace opening the ``"flashcards"`` object. An unterminated
    string value is closed in place (minus a cut-off escape sequence); anything
    else that is incomplete (a key, a colon, a bare number) is cut back to the
    last point where a value ended. Open objects and arrays are then closed.
    Returns the repaired text and the object key whose string value was cut
    off, or ``None`` if there is no ``{`` at all.
    """
    start = _object_start(text)
    if start == -1:
        return None

    stack: List[Dict[str, Any]] = []
    safe_pos, safe_closers = start, ''
    in_primitive = False

    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if in_primitive and (ch in _WHITESPACE or ch in ',}]'):
            in_primitive = False
            if stack:
                stack[-1]['expect'] = 'comma'
            safe_pos, safe_closers = i, _closers(stack)

        if ch == '"':
            frame = stack[-1] if stack else None
            is_key = frame is not None and frame['type'] == '{' and frame['expect'] == 'key'
            end = STRING_BODY_RE.match(text, i + 1).end()
            if end >= n or text[end] != '"':
                if is_key:
                    break
                m = OPEN_ESCAPE_RE.search(text, i + 1)
                body_end = m.start(1) if m else n
                partial_field = frame['key'] if frame is not None and frame['type'] == '{' else None
                return text[start:body_end] + '"' + _closers(stack), partial_field
            if is_key:
                try:
                    frame['key'] = json.loads(text[i:end + 1])
                except ValueError:
                    frame['key'] = text[i + 1:end]
                frame['expect'] = 'colon'
            else:
                if frame is not None:
                    frame['expect'] = 'comma'
                safe_pos, safe_closers = end + 1, _closers(stack)
            i = end + 1
            continue
        elif ch in '{[':
            if stack:
                stack[-1]['expect'] = 'comma'
            stack.append({'type': ch, 'expect': 'key' if ch == '{' else 'value', 'key': None})
            safe_pos, safe_closers = i + 1, _closers(stack)
        elif ch in '}]':
            if not stack:
                break
            stack.pop()
            if not stack:
                return text[start:i + 1], None
            safe_pos, safe_closers = i + 1, _closers(stack)
        elif ch == ',':
            if stack:
                safe_pos, safe_closers = i, _closers(stack)
                stack[-1]['expect'] = 'key' if stack[-1]['type'] == '{' else 'value'
        elif ch == ':':
            if stack:
                stack[-1]['expect'] = 'value'
        elif ch not in _WHITESPACE:
            in_primitive = True
        i += 1

    return text[start:safe_pos] + safe_closers, None


def _is_filled(value: Any) -> bool:
    return isinstance(value, str) and value != ''


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _draft_from_item(item: Any) -> Optional[FlashcardDraft]:
    if not isinstance(item, dict):
        return None
    front, back = item.get('front'), item.get('back')
    if not (_is_filled(front) and _is_filled(back)):
        return None
    return FlashcardDraft(front=front, back=back, front_rich=_optional_str(item.get('frontRich')), back_rich=_optional_str(item.get('backRich')))


def _classify(item: Any, partial_field: Optional[str]) -> CurrentDraft:
    if not isinstance(item, dict):
        return CurrentDraft()
    front = item.get('front') if isinstance(item.get('front'), str) else ''
    back = item.get('back') if isinstance(item.get('back'), str) else ''
    front_rich = _optional_str(item.get('frontRich'))
    back_rich = _optional_str(item.get('backRich'))
    if _is_filled(front) and _is_filled(back) and partial_field not in ('front', 'back'):
        status = DraftStatus.COMPLETE
    elif _is_filled(front) and partial_field != 'front':
        status = DraftStatus.BACK
    else:
        status = DraftStatus.FRONT
    return CurrentDraft(front=front, back=back, status=status, front_rich=front_rich, back_rich=back_rich)


class StreamingCardExtractor:
    """Tracks the flashcards visible in a growing response buffer.

    One instance per stream. ``update`` takes the whole buffer so far, never
    raises and returns the previous state when nothing better can be read.
    """

    def __init__(self):
        self._last = ExtractionState()

    @property
    def state(self) -> ExtractionState:
        return self._last

    def update(self, buffer: str) -> ExtractionState:
        try:
            state = self._structural(buffer)
            if state is None:
                state = self._scrape(buffer)
        except Exception:
            LOG.debug('extractor_update_failed', exc_info=True)
            return self._last
        self._last = state
        return state

    def finalize(self, buffer: str) -> List[FlashcardDraft]:
        parsed = parse_json_object(buffer or '')
        if parsed is None:
            raise MalformedResponse('Could not find a JSON object in the response', raw_text=buffer)
        cards = parsed.get('flashcards') if isinstance(parsed, dict) else None
        if not isinstance(cards, list) or not cards:
            raise MalformedResponse('Response has no flashcards', raw_text=buffer)
        drafts = []
        for idx, item in enumerate(cards):
            draft = _draft_from_item(item)
            if draft is None:
                LOG.warning('flashcard_item_skipped', extra={'index': idx})
                continue
            drafts.append(draft)
        if not drafts:
            raise MalformedResponse('Response has no usable flashcards', raw_text=buffer)
        return drafts

    def _structural(self, buffer: str) -> Optional[ExtractionState]:
        partial_field = None
        parsed = parse_json_object(buffer)
        if parsed is None:
            repaired = close_truncated_json(strip_code_fences(buffer))
            if repaired is None:
                return None
            text, partial_field = repaired
            parsed = _loads_with_repair(text)
            if parsed is None:
                return None
        if not isinstance(parsed, dict):
            return None
        cards = parsed.get('flashcards')
        if not isinstance(cards, list) or not cards:
            return ExtractionState(completed=[], current=self._last.current)
        completed = [d for d in (_draft_from_item(item) for item in cards[:-1]) if d is not None]
        return ExtractionState(completed=completed, current=_classify(cards[-1], partial_field))

    def _scrape(self, buffer: str) -> ExtractionState:
        fronts = FRONT_RE.findall(buffer or '')
        backs = BACK_RE.findall(buffer or '')
        if not fronts and not backs:
            return self._last
        previous = self._last.current
        if fronts:
            front = fronts[-1]
        else:
            front = previous.front
        back = backs[-1] if backs else ''
        status = DraftStatus.BACK if backs else DraftStatus.FRONT
        return ExtractionState(completed=list(self._last.completed), current=CurrentDraft(front=front, back=back, status=status))


def finalize(buffer: str) -> List[FlashcardDraft]:
    return StreamingCardExtractor().finalize(buffer)
