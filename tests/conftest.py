import os
import pytest
from pathlib import Path

from dotenv import load_dotenv

# load test env first
env_path = Path(__file__).resolve().parents[1] / '.env.test'
if env_path.exists():
    load_dotenv(env_path)

os.environ.setdefault('TESTING', '1')


def _reset_singletons():
    from flashdeck.flashcards import FlashcardGenerator
    from flashdeck.study import QuizGenerator, CacheManager, SessionManager
    from flashdeck.storage import Repository
    from flashdeck.ingest import MediaProcessor
    from flashdeck.utils import reset_openai_client

    for cls in (FlashcardGenerator, QuizGenerator, CacheManager, SessionManager, Repository, MediaProcessor):
        cls._instance = None
    reset_openai_client()


@pytest.fixture(autouse=True)
def reset_singletons():
    # every test gets a fresh in-memory repository and no cached clients
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture
def fake_openai(monkeypatch):
    from tests.fixtures.mock_openai import FakeOpenAI

    client = FakeOpenAI()
    monkeypatch.setattr('flashdeck.utils.openai_client._client', client)
    return client


@pytest.fixture
def mock_redis_client(monkeypatch):
    from tests.fixtures.mock_redis import MockRedisClient

    client = MockRedisClient()
    monkeypatch.setattr('redis.Redis', lambda *a, **k: client)
    monkeypatch.setattr('redis.from_url', lambda *a, **k: client)
    return client


@pytest.fixture
def mock_boto3_client(monkeypatch):
    from tests.fixtures.mock_aws import fake_boto3_client

    monkeypatch.setattr('boto3.client', fake_boto3_client)
    return True


@pytest.fixture
def repo():
    from flashdeck.storage import Repository
    return Repository.get_instance()


@pytest.fixture
def deck_with_cards(repo):
    from tests.fixtures.sample_data import sample_drafts

    deck = repo.create_deck('Biology')
    cards = repo.save_flashcards(sample_drafts(), deck_id=deck['id'])
    return deck, cards


@pytest.fixture
def sample_image_bytes():
    from io import BytesIO
    from PIL import Image

    img = Image.new('RGB', (100, 100), color=(255, 255, 255))
    buf = BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()
