import pytest
import requests
from youtube_transcript_api import TranscriptsDisabled

from flashdeck.ingest import web
from flashdeck.ingest import fetch_website_text, fetch_youtube_text, extract_video_id, normalize_url, html_to_text, WebFetchError, InvalidURLError

PAGE = '<html><head><style>p{}</style><script>var x = 1;</script></head><body><h1>Cells</h1>\n<p>Cells   are units.</p></body></html>'


class FakeResponse:
    def __init__(self, text='', status_code=200, payload=None):
        self.text = text
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')

    def json(self):
        return self._payload


@pytest.mark.unit
def test_normalize_url():
    assert normalize_url('example.com/page') == 'https://example.com/page'
    assert normalize_url(' http://example.com ') == 'http://example.com'
    with pytest.raises(InvalidURLError):
        normalize_url('  ')


@pytest.mark.unit
def test_html_to_text_drops_scripts():
    assert html_to_text(PAGE) == 'Cells Cells are units.'


@pytest.mark.unit
def test_fetch_website_text(monkeypatch):
    calls = []

    def fake_get(url, headers=None, timeout=None, **kw):
        calls.append((url, headers))
        return FakeResponse(PAGE)

    monkeypatch.setattr('requests.get', fake_get)
    res = fetch_website_text('example.com/cells')
    assert res['text'] == 'Website: https://example.com/cells\n\nCells Cells are units.'
    assert res['website_info']['url'] == 'https://example.com/cells'
    assert res['website_info']['text_length'] == len('Cells Cells are units.')
    assert 'Mozilla' in calls[0][1]['User-Agent']


@pytest.mark.unit
def test_fetch_website_text_errors(monkeypatch):
    monkeypatch.setattr('requests.get', lambda *a, **k: FakeResponse(status_code=403))
    with pytest.raises(WebFetchError):
        fetch_website_text('https://example.com')

    def boom(*a, **k):
        raise requests.ConnectionError('unreachable')

    monkeypatch.setattr('requests.get', boom)
    with pytest.raises(WebFetchError):
        fetch_website_text('https://example.com')


@pytest.mark.unit
@pytest.mark.parametrize('url', [
    'https://www.youtube.com/watch?v=dQw4w9WgXcQ',
    'https://youtu.be/dQw4w9WgXcQ?t=10',
    'youtube.com/shorts/dQw4w9WgXcQ',
    'https://m.youtube.com/embed/dQw4w9WgXcQ',
])
def test_extract_video_id(url):
    assert extract_video_id(url) == 'dQw4w9WgXcQ'


@pytest.mark.unit
@pytest.mark.parametrize('url', ['https://vimeo.com/123', 'https://www.youtube.com/feed', ''])
def test_extract_video_id_rejects(url):
    with pytest.raises(InvalidURLError):
        extract_video_id(url)


@pytest.mark.unit
def test_fetch_youtube_text_with_captions(monkeypatch):
    monkeypatch.delenv('YOUTUBE_API_KEY', raising=False)
    monkeypatch.setattr(web, 'fetch_transcript', lambda vid: [{'text': 'Hello', 'start': 0.0, 'duration': 1.0}, {'text': 'class', 'start': 1.0, 'duration': 1.0}])
    res = fetch_youtube_text('https://youtu.be/dQw4w9WgXcQ')
    assert res['video_id'] == 'dQw4w9WgXcQ'
    assert res['segment_count'] == 2
    assert res['needs_transcription'] is False
    assert 'Captions:\nHello class' in res['text']
    assert res['video_info']['title'] == 'YouTube video dQw4w9WgXcQ'


@pytest.mark.unit
def test_fetch_youtube_text_without_captions(monkeypatch):
    monkeypatch.setenv('YOUTUBE_API_KEY', 'yt-key')

    def no_transcript(vid):
        raise TranscriptsDisabled(vid)

    payload = {'items': [{'snippet': {'title': 'Cell biology 101', 'description': 'Intro', 'publishedAt': '2024-01-01T00:00:00Z'}}]}
    monkeypatch.setattr('requests.get', lambda *a, **k: FakeResponse(payload=payload))
    monkeypatch.setattr(web, 'fetch_transcript', no_transcript)
    res = fetch_youtube_text('https://www.youtube.com/watch?v=dQw4w9WgXcQ')
    assert res['needs_transcription'] is True
    assert res['segment_count'] == 0
    assert res['text'].startswith('Title: Cell biology 101')
    assert 'Published: 2024-01-01T00:00:00Z' in res['text']
