import os
import re
import json
import time
import random
from typing import List, Optional, Dict, Any, Tuple

from pydantic import BaseModel, ConfigDict, Field
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from openai import OpenAIError, APITimeoutError

from flashdeck.utils import get_logger, log_llm_call, get_openai_client, OpenAIClientError
from flashdeck.utils.openai_client import usage_tokens, message_content

LOG = get_logger()


# Exceptions
class QuizGeneratorError(Exception):
    pass


class QuizAPIError(QuizGeneratorError):
    pass


class QuizValidationError(QuizGeneratorError):
    pass


class QuizTimeoutError(QuizGeneratorError):
    pass


# Models
class Choice(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str
    is_correct: bool = Field(False, alias='isCorrect')


class MultipleChoiceQuestion(BaseModel):
    card_id: str
    question: str
    choices: List[Choice]


class CardChoices(BaseModel):
    id: str
    choices: List[Choice]


class TrueFalseStatement(BaseModel):
    statement: str
    is_true: bool
    explanation: Optional[str] = None


# Env
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
QUIZ_MAX_TOKENS = int(os.getenv('QUIZ_MAX_TOKENS', '4000'))
QUIZ_TEMPERATURE = float(os.getenv('QUIZ_TEMPERATURE', '0.5'))
QUIZ_MAX_BATCH_CARDS = int(os.getenv('QUIZ_MAX_BATCH_CARDS', '50'))
QUIZ_CONTEXT_CARDS = int(os.getenv('QUIZ_CONTEXT_CARDS', '10'))
OPENAI_RETRY_ATTEMPTS = int(os.getenv('OPENAI_RETRY_ATTEMPTS', '3'))

CHOICE_LABELS = ('a', 'b', 'c', 'd')
FENCED_JSON_RE = re.compile(r'```json\s*\n([\s\S]*?)\n\s*```')
OBJECT_RE = re.compile(r'\{[\s\S]*\}')
ARRAY_RE = re.compile(r'\[[\s\S]*\]')


def _shuffled(items: list) -> list:
    out = list(items)
    random.shuffle(out)
    return out


def _relabel(choices: List[Choice]) -> List[Choice]:
    return [Choice(id=CHOICE_LABELS[i], text=c.text, is_correct=c.is_correct) for i, c in enumerate(_shuffled(choices))]


def _validate_choices(raw: Any, where: str) -> List[Choice]:
    if not isinstance(raw, list) or len(raw) != 4:
        raise QuizValidationError(f'{where}: expected exactly 4 choices')
    try:
        choices = [Choice(id=str(c.get('id', '')), text=str(c['text']), is_correct=bool(c.get('isCorrect', c.get('is_correct', False)))) for c in raw]
    except (AttributeError, KeyError, TypeError) as e:
        raise QuizValidationError(f'{where}: malformed choice') from e
    if sum(1 for c in choices if c.is_correct) != 1:
        raise QuizValidationError(f'{where}: exactly one choice must be correct')
    return choices


def local_choices(card: Dict[str, Any], other_cards: List[Dict[str, Any]]) -> List[Choice]:
    """Four choices built from the deck itself: the card's own answer plus up to
    three answers of other cards, padded with placeholders."""
    choices = [Choice(id='1', text=card.get('back') or '', is_correct=True)]
    pool = [c for c in other_cards if c.get('id') != card.get('id') and not c.get('deleted_flag') and c.get('back')]
    pool = _shuffled(pool[:QUIZ_CONTEXT_CARDS])
    seen = {card.get('back')}
    for c in pool:
        if len(choices) == 4:
            break
        if c['back'] in seen:
            continue
        seen.add(c['back'])
        choices.append(Choice(id=str(len(choices) + 1), text=c['back'], is_correct=False))
    while len(choices) < 4:
        n = len(choices)
        choices.append(Choice(id=str(n + 1), text=f'Incorrect option {n}', is_correct=False))
    return _shuffled(choices)


def default_true_false(card: Dict[str, Any]) -> List[TrueFalseStatement]:
    front, back = card.get('front') or '', card.get('back') or ''
    return [
        TrueFalseStatement(statement=f'{front} is {back}.', is_true=True, explanation=f'This statement is correct. The answer to "{front}" is "{back}".'),
        TrueFalseStatement(statement=f'{front} is not {back}.', is_true=False, explanation=f'This statement is incorrect. The answer to "{front}" is "{back}".'),
    ]


def _statements_from(raw: Any) -> Optional[List[TrueFalseStatement]]:
    if not isinstance(raw, list):
        return None
    out = []
    for q in raw:
        if not isinstance(q, dict):
            continue
        text = q.get('text') or q.get('statement')
        is_true = q.get('isTrue', q.get('is_true'))
        if not text or not isinstance(is_true, bool):
            continue
        explanation = q.get('explanation') or ('This statement is correct.' if is_true else 'This statement is incorrect.')
        out.append(TrueFalseStatement(statement=str(text), is_true=is_true, explanation=explanation))
    return out or None


def _load_json(content: str) -> Any:
    m = FENCED_JSON_RE.search(content or '')
    text = m.group(1) if m else (content or '')
    try:
        return json.loads(text)
    except ValueError:
        pass
    for pattern in (ARRAY_RE, OBJECT_RE):
        m = pattern.search(text)
        if m:
            try:
                return json.loads(m.group(0))
            except ValueError:
                continue
    raise QuizValidationError('Model response is not valid JSON')


class QuizGenerator:
    _instance = None

    def __init__(self):
        if not os.getenv('OPENAI_API_KEY'):
            raise QuizGeneratorError('OPENAI_API_KEY not set')
        self.model = OPENAI_MODEL
        self.temperature = QUIZ_TEMPERATURE
        LOG.info('QuizGenerator initialized', extra={'model': self.model})

    @classmethod
    def get_instance(cls):
        if cls._instance is None:
            cls._instance = QuizGenerator()
        return cls._instance

    @retry(stop=stop_after_attempt(OPENAI_RETRY_ATTEMPTS), wait=wait_exponential(multiplier=1, min=1, max=10), retry=retry_if_exception_type((QuizAPIError, QuizTimeoutError)), reraise=True)
    def _call_openai(self, messages: List[dict], json_object: bool = True, request_id: str = None) -> str:
        try:
            client = get_openai_client()
        except OpenAIClientError as e:
            raise QuizGeneratorError(str(e)) from e
        kwargs = {}
        if json_object:
            kwargs['response_format'] = {'type': 'json_object'}
        start = time.time()
        try:
            resp = client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=QUIZ_MAX_TOKENS,
                **kwargs,
            )
        except APITimeoutError as e:
            LOG.exception('quiz_openai_timeout', exc_info=True)
            raise QuizTimeoutError(str(e)) from e
        except OpenAIError as e:
            LOG.exception('quiz_openai_error', exc_info=True)
            raise QuizAPIError(str(e)) from e
        duration = int((time.time() - start) * 1000)
        prompt_tokens, completion_tokens = usage_tokens(resp)
        log_llm_call(request_id=request_id, model=self.model, prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, duration_ms=duration)
        return message_content(resp)

    def multiple_choice(self, card: Dict[str, Any], context_cards: Optional[List[Dict[str, Any]]] = None, request_id: str = None) -> MultipleChoiceQuestion:
        context = [c for c in (context_cards or []) if c.get('id') != card.get('id')][:QUIZ_CONTEXT_CARDS]
        lines = [
            'Create one 4-choice quiz question from this flashcard.',
            f"Front: {card.get('front')}",
            f"Back: {card.get('back')}",
        ]
        if context:
            lines.append('Other cards in the same deck (context for plausible wrong answers):')
            for i, c in enumerate(context, 1):
                lines.append(f"{i}. {c.get('front')} -> {c.get('back')}")
        lines.append('Return JSON: {"question": "...", "choices": [{"id": "a", "text": "...", "isCorrect": true}, ...]} '
                     'with exactly 4 choices and exactly one correct. Wrong choices must be related but clearly wrong.')
        messages = [
            {'role': 'system', 'content': 'You write multiple-choice quiz questions for flashcard study.'},
            {'role': 'user', 'content': '\n'.join(lines)},
        ]
        data = _load_json(self._call_openai(messages, request_id=request_id))
        if not isinstance(data, dict) or not data.get('question'):
            raise QuizValidationError('Response is missing question')
        choices = _validate_choices(data.get('choices'), 'question')
        return MultipleChoiceQuestion(card_id=str(card.get('id')), question=str(data['question']), choices=_relabel(choices))

    def _batch_prompt(self, cards: List[Dict[str, Any]]) -> str:
        parts = ['Generate one 4-choice question for each flashcard below.', '']
        for i, c in enumerate(cards, 1):
            deck_title = c.get('deck_title') or 'unknown'
            parts.extend([
                f'## Card {i}',
                f"- ID: {c.get('id')}",
                f"- Front: {c.get('front')}",
                f"- Back: {c.get('back')}",
                f'- Deck: {deck_title}',
                '',
            ])
        parts.extend([
            'Return JSON only:',
            '{"cards": [{"id": "<card id>", "choices": [{"id": "a", "text": "correct answer", "isCorrect": true}, '
            '{"id": "b", "text": "...", "isCorrect": false}, {"id": "c", "text": "...", "isCorrect": false}, '
            '{"id": "d", "text": "...", "isCorrect": false}]}]}',
            'Requirements: exactly 4 choices per card, exactly one correct; wrong choices are related to the answer '
            'but contain wrong information; cover every card.',
        ])
        return '\n'.join(parts)

    def multiple_choice_batch(self, cards: List[Dict[str, Any]], request_id: str = None) -> List[CardChoices]:
        if not cards:
            raise QuizValidationError('cards must not be empty')
        if len(cards) > QUIZ_MAX_BATCH_CARDS:
            raise QuizValidationError(f'At most {QUIZ_MAX_BATCH_CARDS} cards per batch')
        messages = [
            {'role': 'system', 'content': 'You write multiple-choice quiz questions for flashcard study.'},
            {'role': 'user', 'content': self._batch_prompt(cards)},
        ]
        content = self._call_openai(messages, request_id=request_id)
        m = OBJECT_RE.search(content or '')
        if not m:
            raise QuizValidationError('No JSON object in model response')
        try:
            data = json.loads(m.group(0))
        except ValueError as e:
            LOG.exception('quiz_response_parse_failed', exc_info=True)
            raise QuizValidationError('Failed to parse model response') from e
        items = data.get('cards') if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise QuizValidationError('Response is missing the cards array')
        out = []
        for item in items:
            if not isinstance(item, dict) or not item.get('id'):
                raise QuizValidationError('Card entry without id')
            choices = _validate_choices(item.get('choices'), f"card {item.get('id')}")
            out.append(CardChoices(id=str(item['id']), choices=_relabel(choices)))
        missing = {str(c.get('id')) for c in cards} - {c.id for c in out}
        if missing:
            LOG.warning('quiz_batch_missing_cards', extra={'missing': sorted(missing)})
        return out

    def true_false_with_fallbacks(self, cards: List[Dict[str, Any]], request_id: str = None) -> Tuple[Dict[str, List[TrueFalseStatement]], List[str]]:
        """Two statements per card, one true and one false.

        Cards the model skipped, unparsable output and model failures all fall
        back to statements built from the card itself. Returns the statements
        and the ids of the cards that fell back.
        """
        if not cards:
            raise QuizValidationError('cards must not be empty')
        if len(cards) > QUIZ_MAX_BATCH_CARDS:
            raise QuizValidationError(f'At most {QUIZ_MAX_BATCH_CARDS} cards per batch')
        payload = [{'id': str(c.get('id')), 'front': c.get('front') or '', 'back': c.get('back') or ''} for c in cards]
        messages = [
            {'role': 'system', 'content': 'You write true/false questions for flashcard study.'},
            {'role': 'user', 'content': (
                'For each flashcard write two one-sentence statements. The first is true and matches the card exactly, '
                'without hedging. The second is false: it clearly contradicts the card with concrete wrong information, '
                'not just a negation, while still testing understanding.\n\n'
                f'Flashcards:\n{json.dumps(payload, ensure_ascii=False, indent=2)}\n\n'
                'Answer with JSON: [{"cardId": "<card id>", "questions": [{"text": "...", "isTrue": true}, '
                '{"text": "...", "isTrue": false}]}]'
            )},
        ]
        result: Dict[str, List[TrueFalseStatement]] = {}
        try:
            data = _load_json(self._call_openai(messages, json_object=False, request_id=request_id))
            if isinstance(data, list):
                for item in data:
                    if isinstance(item, dict) and item.get('cardId') is not None:
                        stmts = _statements_from(item.get('questions'))
                        if stmts:
                            result[str(item['cardId'])] = stmts
            elif isinstance(data, dict) and isinstance(data.get('questions'), dict):
                for card_id, raw in data['questions'].items():
                    stmts = _statements_from(raw)
                    if stmts:
                        result[str(card_id)] = stmts
            elif isinstance(data, dict):
                for c in payload:
                    stmts = _statements_from(data.get(c['id']))
                    if stmts:
                        result[c['id']] = stmts
        except QuizGeneratorError:
            LOG.warning('true_false_generation_failed', exc_info=True)

        fallback_ids = []
        for c in cards:
            card_id = str(c.get('id'))
            if card_id not in result:
                result[card_id] = default_true_false(c)
                fallback_ids.append(card_id)
        return result, fallback_ids

    def true_false_batch(self, cards: List[Dict[str, Any]], request_id: str = None) -> Dict[str, List[TrueFalseStatement]]:
        return self.true_false_with_fallbacks(cards, request_id=request_id)[0]


# convenience
def generate_true_false_batch(cards: List[Dict[str, Any]], request_id: str = None) -> Dict[str, List[Dict[str, Any]]]:
    g = QuizGenerator.get_instance()
    res = g.true_false_batch(cards, request_id=request_id)
    return {k: [s.model_dump() for s in v] for k, v in res.items()}
