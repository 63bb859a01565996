import pytest
import redis

from flashdeck.study import CacheManager

CARDS = [{'id': 'c1', 'front': 'Q1', 'back': 'A1'}, {'id': 'c2', 'front': 'Q2', 'back': 'A2'}]


@pytest.fixture
def cache(monkeypatch, mock_redis_client):
    monkeypatch.setenv('REDIS_CACHE_ENABLED', 'true')
    return CacheManager()


@pytest.mark.unit
def test_set_and_get_quiz(cache, mock_redis_client):
    cache.set_quiz('mc', CARDS, [{'id': 'c1', 'choices': []}], ttl=60)
    assert cache.get_quiz('mc', CARDS) == [{'id': 'c1', 'choices': []}]
    key = next(iter(mock_redis_client.store))
    assert key.startswith('quiz:mc:')
    assert mock_redis_client.expirations[key] == 60


@pytest.mark.unit
def test_key_ignores_card_order_but_not_content(cache):
    cache.set_quiz('tf', CARDS, {'c1': []})
    assert cache.get_quiz('tf', list(reversed(CARDS))) == {'c1': []}
    edited = [dict(CARDS[0], back='changed'), CARDS[1]]
    assert cache.get_quiz('tf', edited) is None
    assert cache.get_quiz('mc', CARDS) is None


@pytest.mark.unit
def test_invalidate_quiz(cache):
    cache.set_quiz('mc', CARDS, [])
    cache.invalidate_quiz('mc', CARDS)
    assert cache.get_quiz('mc', CARDS) is None


@pytest.mark.unit
def test_disabled_cache_is_noop(monkeypatch, mock_redis_client):
    monkeypatch.setenv('REDIS_CACHE_ENABLED', 'false')
    c = CacheManager()
    c.set_quiz('mc', CARDS, [])
    assert c.get_quiz('mc', CARDS) is None
    assert mock_redis_client.store == {}


@pytest.mark.unit
def test_unreachable_redis_disables_cache(monkeypatch):
    class Down:
        def ping(self):
            raise redis.ConnectionError('down')

    monkeypatch.setenv('REDIS_CACHE_ENABLED', 'true')
    monkeypatch.setattr('redis.Redis', lambda *a, **k: Down())
    c = CacheManager()
    assert c.enabled is False
    assert c.get_quiz('mc', CARDS) is None
