import os
import json
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable

import redis

from flashdeck.utils import get_logger

LOG = get_logger()

REDIS_URL = os.getenv('REDIS_URL', None)
REPOSITORY_BACKEND = os.getenv('REPOSITORY_BACKEND', 'auto').lower()
KEY_PREFIX = os.getenv('REPOSITORY_KEY_PREFIX', 'flashdeck')

DECK_STATUSES = ('active', 'archived', 'deleted')
CARD_UPDATABLE_FIELDS = ('front', 'back', 'front_rich', 'back_rich', 'tags', 'category', 'deck_id')


class RepositoryError(Exception):
    pass


class NotFoundError(RepositoryError):
    pass


class RepositoryValidationError(RepositoryError):
    pass


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _MemoryStore:
    """Process-local stand-in used when Redis is unavailable or disabled."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.sets: Dict[str, set] = {}
        self.lists: Dict[str, list] = {}
        self.counters: Dict[str, int] = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value):
        self.values[key] = value

    def delete(self, key):
        self.values.pop(key, None)
        self.sets.pop(key, None)
        self.lists.pop(key, None)

    def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    def srem(self, key, member):
        self.sets.get(key, set()).discard(member)

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start:end + 1])


class Repository:
    """Decks, cards, review stats, study sessions and streaks.

    Records are JSON documents. With Redis reachable they live there under
    ``flashdeck:*`` keys, otherwise in process memory; callers see the same
    behaviour either way.
    """

    _instance = None

    def __init__(self):
        self._use_redis = False
        self._client = None
        self._memory = _MemoryStore()
        if REPOSITORY_BACKEND == 'memory':
            LOG.info('Repository using in-memory store')
            return
        try:
            if REDIS_URL:
                self._client = redis.from_url(REDIS_URL, decode_responses=True)
            else:
                self._client = redis.Redis(host=os.getenv('REDIS_HOST', 'redis'), port=int(os.getenv('REDIS_PORT', '6379')), password=os.getenv('REDIS_PASSWORD') or None, decode_responses=True, socket_timeout=3)
            self._client.ping()
            self._use_redis = True
            LOG.info('Repository using Redis', extra={'redis_url': REDIS_URL})
        except redis.RedisError as e:
            if REPOSITORY_BACKEND == 'redis':
                raise RepositoryError(f'Redis unavailable: {e}') from e
            LOG.warning('Redis not available for Repository, using in-memory store', extra={'error': str(e)})
            self._client = None

    @classmethod
    def get_instance(cls) -> 'Repository':
        if cls._instance is None:
            cls._instance = Repository()
        return cls._instance

    @property
    def backend(self) -> str:
        return 'redis' if self._use_redis else 'memory'

    # -- low level -------------------------------------------------------

    @property
    def _store(self):
        return self._client if self._use_redis else self._memory

    def _key(self, *parts) -> str:
        return ':'.join([KEY_PREFIX] + [str(p) for p in parts])

    def _load(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self._store.get(key)
        except redis.RedisError as e:
            LOG.exception('repository_get_failed', exc_info=True)
            raise RepositoryError(str(e)) from e
        return json.loads(raw) if raw else None

    def _save(self, key: str, obj: Dict[str, Any]):
        try:
            self._store.set(key, json.dumps(obj))
        except redis.RedisError as e:
            LOG.exception('repository_save_failed', exc_info=True)
            raise RepositoryError(str(e)) from e

    def _members(self, key: str) -> set:
        try:
            return set(self._store.smembers(key))
        except redis.RedisError as e:
            raise RepositoryError(str(e)) from e

    def _add_member(self, key: str, member: str):
        try:
            self._store.sadd(key, member)
        except redis.RedisError as e:
            raise RepositoryError(str(e)) from e

    def _remove_member(self, key: str, member: str):
        try:
            self._store.srem(key, member)
        except redis.RedisError as e:
            raise RepositoryError(str(e)) from e

    def _next_seq(self, name: str) -> int:
        try:
            return int(self._store.incr(self._key('seq', name)))
        except redis.RedisError as e:
            raise RepositoryError(str(e)) from e

    def _load_many(self, keys: Iterable[str]) -> List[Dict[str, Any]]:
        out = []
        for k in keys:
            obj = self._load(k)
            if obj is not None:
                out.append(obj)
        return out

    # -- decks -----------------------------------------------------------

    def _deck_card_ids(self, deck_id: int) -> set:
        return self._members(self._key('deck_cards', deck_id))

    def _with_card_count(self, deck: Dict[str, Any]) -> Dict[str, Any]:
        cards = self._load_many(self._key('card', cid) for cid in self._deck_card_ids(deck['id']))
        deck = dict(deck)
        deck['card_count'] = len([c for c in cards if not c.get('deleted_flag')])
        return deck

    def create_deck(self, title: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        if not title or not str(title).strip():
            raise RepositoryValidationError('Title is required')
        now = utcnow_iso()
        deck_id = self._next_seq('deck')
        deck = {'id': deck_id, 'title': str(title).strip(), 'status': 'active', 'user_id': user_id, 'seq': deck_id, 'created_at': now, 'updated_at': now}
        self._save(self._key('deck', deck_id), deck)
        self._add_member(self._key('decks'), str(deck_id))
        LOG.info('deck_created', extra={'deck_id': deck_id})
        return self._with_card_count(deck)

    def get_deck(self, deck_id: int, include_deleted: bool = False) -> Dict[str, Any]:
        deck = self._load(self._key('deck', deck_id))
        if deck is None or (deck.get('status') == 'deleted' and not include_deleted):
            raise NotFoundError(f'Deck {deck_id} not found')
        return self._with_card_count(deck)

    def list_decks(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        decks = self._load_many(self._key('deck', d) for d in self._members(self._key('decks')))
        decks = [d for d in decks if d.get('status') != 'deleted']
        if status:
            decks = [d for d in decks if d.get('status') == status]
        decks.sort(key=lambda d: (d.get('created_at', ''), d.get('seq', 0)), reverse=True)
        return [self._with_card_count(d) for d in decks]

    def update_deck(self, deck_id: int, title: Optional[str] = None, status: Optional[str] = None) -> Dict[str, Any]:
        if title is None and status is None:
            raise RepositoryValidationError('No fields to update')
        deck = self._load(self._key('deck', deck_id))
        if deck is None or deck.get('status') == 'deleted':
            raise NotFoundError(f'Deck {deck_id} not found')
        if title is not None:
            if not str(title).strip():
                raise RepositoryValidationError('Title must not be empty')
            deck['title'] = str(title).strip()
        if status is not None:
            if status not in DECK_STATUSES:
                raise RepositoryValidationError(f'status must be one of {"|".join(DECK_STATUSES)}')
            deck['status'] = status
        deck['updated_at'] = utcnow_iso()
        self._save(self._key('deck', deck_id), deck)
        return self._with_card_count(deck)

    def delete_deck(self, deck_id: int) -> Dict[str, Any]:
        deck = self.update_deck(deck_id, status='deleted')
        LOG.info('deck_deleted', extra={'deck_id': deck_id})
        return deck

    # -- flashcards ------------------------------------------------------

    def save_flashcards(self, drafts: List[Dict[str, Any]], deck_id: Optional[int] = None, category: Optional[str] = None, tags: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        if not drafts:
            raise RepositoryValidationError('No flashcards to save')
        if deck_id is not None:
            self.get_deck(deck_id)
        saved = []
        for d in drafts:
            front, back = d.get('front'), d.get('back')
            if not front or not back:
                raise RepositoryValidationError('Every flashcard needs front and back')
            now = utcnow_iso()
            card = {
                'id': str(uuid.uuid4()),
                'deck_id': deck_id,
                'front': front,
                'back': back,
                'front_rich': d.get('front_rich'),
                'back_rich': d.get('back_rich'),
                'tags': list(d.get('tags') or tags or []),
                'category': d.get('category') or category,
                'deleted_flag': False,
                'seq': self._next_seq('card'),
                'created_at': now,
                'updated_at': now,
            }
            self._save(self._key('card', card['id']), card)
            self._add_member(self._key('cards'), card['id'])
            if deck_id is not None:
                self._add_member(self._key('deck_cards', deck_id), card['id'])
            saved.append(card)
        LOG.info('flashcards_saved', extra={'count': len(saved), 'deck_id': deck_id})
        return saved

    def get_card(self, card_id: str, include_deleted: bool = False) -> Dict[str, Any]:
        card = self._load(self._key('card', card_id))
        if card is None or (card.get('deleted_flag') and not include_deleted):
            raise NotFoundError(f'Flashcard {card_id} not found')
        return card

    def list_cards(self, deck_id: Optional[int] = None, category: Optional[str] = None, tag: Optional[str] = None, search: Optional[str] = None, offset: int = 0, limit: int = 100) -> Dict[str, Any]:
        if deck_id is not None:
            ids = self._deck_card_ids(deck_id)
        else:
            ids = self._members(self._key('cards'))
        cards = [c for c in self._load_many(self._key('card', cid) for cid in ids) if not c.get('deleted_flag')]
        if deck_id is not None:
            cards = [c for c in cards if c.get('deck_id') == deck_id]
        if category:
            cards = [c for c in cards if c.get('category') == category]
        if tag:
            cards = [c for c in cards if tag in (c.get('tags') or [])]
        if search:
            needle = search.lower()
            cards = [c for c in cards if needle in (c.get('front') or '').lower() or needle in (c.get('back') or '').lower()]
        cards.sort(key=lambda c: (c.get('created_at', ''), c.get('seq', 0)), reverse=True)
        return {'flashcards': cards[offset:offset + limit], 'count': len(cards)}

    def update_card(self, card_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        updates = {k: v for k, v in (fields or {}).items() if k in CARD_UPDATABLE_FIELDS}
        if not updates:
            raise RepositoryValidationError('No fields to update')
        card = self.get_card(card_id)
        old_deck = card.get('deck_id')
        if 'deck_id' in updates and updates['deck_id'] is not None:
            self.get_deck(updates['deck_id'])
        for k in ('front', 'back'):
            if k in updates and not updates[k]:
                raise RepositoryValidationError(f'{k} must not be empty')
        card.update(updates)
        card['updated_at'] = utcnow_iso()
        self._save(self._key('card', card_id), card)
        if 'deck_id' in updates and updates['deck_id'] != old_deck:
            if old_deck is not None:
                self._remove_member(self._key('deck_cards', old_deck), card_id)
            if updates['deck_id'] is not None:
                self._add_member(self._key('deck_cards', updates['deck_id']), card_id)
        return card

    def delete_card(self, card_id: str) -> Dict[str, Any]:
        card = self.get_card(card_id)
        card['deleted_flag'] = True
        card['updated_at'] = utcnow_iso()
        self._save(self._key('card', card_id), card)
        LOG.info('flashcard_deleted', extra={'card_id': card_id})
        return card

    def cards_for_decks(self, deck_ids: List[int]) -> List[Dict[str, Any]]:
        out = []
        for deck_id in deck_ids:
            cards = self._load_many(self._key('card', cid) for cid in self._deck_card_ids(deck_id))
            out.extend(c for c in cards if not c.get('deleted_flag') and c.get('deck_id') == deck_id)
        out.sort(key=lambda c: c.get('seq', 0))
        return out

    def cards_by_ids(self, card_ids: List[str]) -> List[Dict[str, Any]]:
        cards = self._load_many(self._key('card', cid) for cid in card_ids)
        return [c for c in cards if not c.get('deleted_flag')]

    # -- review stats ----------------------------------------------------

    def get_stats(self, card_id: str) -> Optional[Dict[str, Any]]:
        return self._load(self._key('stats', card_id))

    def put_stats(self, card_id: str, stats: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(stats)
        row['card_id'] = card_id
        row['updated_at'] = utcnow_iso()
        self._save(self._key('stats', card_id), row)
        return row

    # -- sessions, logs, streaks -----------------------------------------

    def create_session(self, user_id: str, mode: str, deck_ids: List[int]) -> Dict[str, Any]:
        session = {
            'id': str(uuid.uuid4()),
            'user_id': user_id,
            'mode': mode,
            'status': 'in_progress',
            'deck_ids': list(deck_ids),
            'start_time': utcnow_iso(),
            'end_time': None,
        }
        self._save(self._key('session', session['id']), session)
        return session

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._load(self._key('session', session_id))

    def put_session(self, session: Dict[str, Any]) -> Dict[str, Any]:
        self._save(self._key('session', session['id']), session)
        return session

    def add_log(self, log: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(log)
        row.setdefault('id', str(uuid.uuid4()))
        try:
            self._store.rpush(self._key('session_logs', row['session_id']), json.dumps(row))
        except redis.RedisError as e:
            LOG.exception('repository_log_failed', exc_info=True)
            raise RepositoryError(str(e)) from e
        return row

    def session_logs(self, session_id: str) -> List[Dict[str, Any]]:
        try:
            raw = self._store.lrange(self._key('session_logs', session_id), 0, -1)
        except redis.RedisError as e:
            raise RepositoryError(str(e)) from e
        return [json.loads(r) for r in raw]

    def get_streak(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._load(self._key('streak', user_id))

    def put_streak(self, user_id: str, streak: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(streak)
        row['user_id'] = user_id
        row['updated_at'] = utcnow_iso()
        self._save(self._key('streak', user_id), row)
        return row

    def ping(self) -> bool:
        if not self._use_redis:
            return True
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False
