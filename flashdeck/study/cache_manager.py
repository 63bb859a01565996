import os
import json
import hashlib
from typing import Optional, Dict, Any, List

import redis

from flashdeck.utils import get_logger

LOG = get_logger()


class CacheManager:
    """Caches generated quiz batches so repeated requests for the same cards
    do not call the model again."""

    _instance = None

    def __init__(self):
        host = os.getenv('REDIS_HOST', 'redis')
        port = int(os.getenv('REDIS_PORT', '6379'))
        password = os.getenv('REDIS_PASSWORD') or None
        self.enabled = os.getenv('REDIS_CACHE_ENABLED', 'true').lower() in ('1', 'true', 'yes')
        self.ttl = int(os.getenv('REDIS_CACHE_TTL', '3600'))
        self._client = None
        if not self.enabled:
            LOG.info('redis_cache_disabled')
            return
        try:
            self._client = redis.Redis(host=host, port=port, password=password, decode_responses=True, socket_timeout=3)
            self._client.ping()
            LOG.info('redis_cache_connected', extra={'host': host, 'port': port})
        except redis.RedisError as e:
            LOG.warning('redis_cache_unavailable', extra={'error': str(e)})
            self.enabled = False

    @classmethod
    def get_instance(cls) -> 'CacheManager':
        if cls._instance is None:
            cls._instance = CacheManager()
        return cls._instance

    def _key(self, kind: str, cards: List[Dict[str, Any]]) -> str:
        material = sorted((str(c.get('id')), c.get('front') or '', c.get('back') or '') for c in cards)
        h = hashlib.sha256(json.dumps(material).encode()).hexdigest()[:16]
        return f'quiz:{kind}:{h}'

    def get_quiz(self, kind: str, cards: List[Dict[str, Any]]) -> Optional[Any]:
        if not self.enabled or not self._client:
            return None
        key = self._key(kind, cards)
        try:
            val = self._client.get(key)
            if val is None:
                LOG.info('cache_miss', extra={'key': key})
                return None
            LOG.info('cache_hit', extra={'key': key})
            return json.loads(val)
        except (redis.RedisError, ValueError) as e:
            LOG.warning('cache_get_failed', extra={'error': str(e)})
            return None

    def set_quiz(self, kind: str, cards: List[Dict[str, Any]], result: Any, ttl: Optional[int] = None):
        if not self.enabled or not self._client:
            return
        key = self._key(kind, cards)
        ttl = ttl or self.ttl
        try:
            self._client.setex(key, ttl, json.dumps(result))
            LOG.info('cache_set', extra={'key': key, 'ttl': ttl})
        except (redis.RedisError, TypeError) as e:
            LOG.warning('cache_set_failed', extra={'error': str(e)})

    def invalidate_quiz(self, kind: str, cards: List[Dict[str, Any]]):
        if not self.enabled or not self._client:
            return
        key = self._key(kind, cards)
        try:
            self._client.delete(key)
            LOG.info('cache_invalidate', extra={'key': key})
        except redis.RedisError as e:
            LOG.warning('cache_invalidate_failed', extra={'error': str(e)})
