import json
import httpx
import openai
import pytest
from fastapi.testclient import TestClient

import main as app_main
from tests.fixtures.sample_data import SAMPLE_TEXT


@pytest.fixture
def client():
    return TestClient(app_main.app)


@pytest.mark.integration
def test_health_and_request_id(client):
    r = client.get('/health', headers={'X-Request-ID': 'trace-123'})
    assert r.status_code == 200
    assert r.json()['status'] == 'ok'
    assert r.headers['X-Request-ID'] == 'trace-123'


@pytest.mark.integration
def test_ready(monkeypatch, client):
    monkeypatch.setattr(app_main, '_check_s3', lambda: 'ok')
    monkeypatch.setattr(app_main, '_check_openai', lambda: 'ok')
    r = client.get('/ready')
    assert r.status_code == 200
    body = r.json()
    assert body['services']['redis'].startswith('warn')
    assert body['status'] == 'ready'


@pytest.mark.integration
def test_ready_fails_when_required_service_is_down(monkeypatch, client):
    monkeypatch.setattr(app_main, '_check_s3', lambda: 'error: down')
    monkeypatch.setattr(app_main, '_check_openai', lambda: 'ok')
    monkeypatch.setattr(app_main.settings, 'S3_REQUIRED_FOR_READY', True)
    assert client.get('/ready').status_code == 503


@pytest.mark.integration
def test_generate_flashcards(fake_openai, client):
    r = client.post('/flashcards/generate', json={'text': SAMPLE_TEXT, 'questionCount': 2}, headers={'X-Request-ID': 'gen-1'})
    assert r.status_code == 200
    body = r.json()
    assert body['success'] is True
    assert body['request_id'] == 'gen-1'
    assert len(body['flashcards']) == 2
    assert body['flashcards'][0]['frontRich'] == '<p>What is <strong>photosynthesis</strong>?</p>'


@pytest.mark.integration
def test_generate_flashcards_prompt_wrapper(fake_openai, client):
    r = client.post('/flashcards/generate', json={'prompt': json.dumps({'text': SAMPLE_TEXT})})
    assert r.status_code == 200


@pytest.mark.integration
@pytest.mark.parametrize('body', [{'text': ''}, {'text': SAMPLE_TEXT, 'questionCount': 500}])
def test_generate_flashcards_bad_request(fake_openai, client, body):
    r = client.post('/flashcards/generate', json=body)
    assert r.status_code == 400
    assert r.json()['success'] is False
    assert fake_openai.calls == []


@pytest.mark.integration
def test_generate_flashcards_malformed_output(fake_openai, client):
    fake_openai.responses.append('Sorry, no cards today.')
    r = client.post('/flashcards/generate', json={'text': SAMPLE_TEXT})
    assert r.status_code == 422
    assert r.json()['error'] == 'Could not parse generated content'


@pytest.mark.integration
def test_generate_flashcards_upstream_errors(fake_openai, client):
    req = httpx.Request('POST', 'https://api.openai.com/v1/chat/completions')
    fake_openai.errors.append(openai.APIConnectionError(request=req))
    assert client.post('/flashcards/generate', json={'text': SAMPLE_TEXT}).status_code == 502
    fake_openai.errors.append(openai.APITimeoutError(request=req))
    assert client.post('/flashcards/generate', json={'text': SAMPLE_TEXT}).status_code == 504


@pytest.mark.integration
def test_stream_flashcards(fake_openai, client):
    r = client.post('/flashcards/stream', json={'text': SAMPLE_TEXT}, headers={'X-Request-ID': 'stream-1'})
    assert r.status_code == 200
    assert r.headers['content-type'].startswith('application/x-ndjson')
    events = [json.loads(line) for line in r.text.splitlines() if line.strip()]
    assert events[0]['type'] == 'progress'
    assert events[-1]['type'] == 'result'
    assert events[-1]['request_id'] == 'stream-1'
    assert [c['front'] for c in events[-1]['flashcards']] == ['What is photosynthesis?', 'Where does it happen?']


@pytest.mark.integration
def test_stream_flashcards_open_failure(fake_openai, client):
    fake_openai.errors.append(openai.APIConnectionError(request=httpx.Request('POST', 'https://api.openai.com')))
    r = client.post('/flashcards/stream', json={'text': SAMPLE_TEXT})
    assert r.status_code == 502


@pytest.mark.integration
def test_flashcard_and_deck_lifecycle(client):
    deck = client.post('/decks', json={'title': 'Biology'}).json()['deck']
    assert deck['card_count'] == 0

    saved = client.post('/flashcards/save', json={
        'deck_id': deck['id'],
        'tags': ['exam'],
        'flashcards': [
            {'front': 'Q1', 'back': 'A1', 'frontRich': '<p onclick="x">Q1</p>'},
            {'front': 'Q2', 'back': 'A2'},
        ],
    })
    assert saved.status_code == 200
    cards = saved.json()['flashcards']
    assert cards[0]['front_rich'] == '<p>Q1</p>'

    listed = client.get('/flashcards/list', params={'deck_id': deck['id'], 'tag': 'exam'}).json()
    assert listed['count'] == 2

    card_id = cards[0]['id']
    patched = client.patch(f'/flashcards/{card_id}', json={'back': 'A1 updated', 'backRich': '<em>A1</em>'})
    assert patched.json()['flashcard']['back'] == 'A1 updated'
    assert patched.json()['flashcard']['back_rich'] == '<em>A1</em>'
    assert client.get(f'/flashcards/{card_id}').json()['flashcard']['back'] == 'A1 updated'

    assert client.delete(f'/flashcards/{card_id}').status_code == 200
    assert client.get(f'/flashcards/{card_id}').status_code == 404
    assert client.get(f"/decks/{deck['id']}").json()['deck']['card_count'] == 1

    renamed = client.patch(f"/decks/{deck['id']}", json={'title': 'Cell Biology'})
    assert renamed.json()['deck']['title'] == 'Cell Biology'
    assert [d['id'] for d in client.get('/decks').json()['decks']] == [deck['id']]
    assert client.delete(f"/decks/{deck['id']}").status_code == 200
    assert client.get(f"/decks/{deck['id']}").status_code == 404


@pytest.mark.integration
def test_save_flashcards_errors(client):
    assert client.post('/flashcards/save', json={'deck_id': 99, 'flashcards': [{'front': 'Q', 'back': 'A'}]}).status_code == 404
    assert client.post('/flashcards/save', json={'flashcards': [{'front': 'Q', 'back': ''}]}).status_code == 400
    assert client.post('/flashcards/save', json={'flashcards': []}).status_code == 422
    assert client.post('/decks', json={'title': '  '}).status_code == 400
    assert client.patch('/flashcards/missing', json={'front': 'x'}).status_code == 404


@pytest.mark.integration
def test_study_session_flow(client, deck_with_cards):
    deck, cards = deck_with_cards
    r = client.post('/study/sessions', json={'deck_ids': [deck['id']], 'mode': 'flashcard'}, headers={'X-User-ID': 'u1'})
    assert r.status_code == 201
    session = r.json()['session']
    assert session['total_cards'] == 3
    assert session['user_id'] == 'u1'
    sid = session['id']

    assert client.get(f'/study/sessions/{sid}').json()['session']['total_cards'] == 3
    study_cards = client.get(f'/study/sessions/{sid}/cards').json()['cards']
    assert {c['id'] for c in study_cards} == {c['id'] for c in cards}

    answer = client.post('/study/answers', json={'session_id': sid, 'card_id': cards[0]['id'], 'correct': True, 'time_taken': 3})
    assert answer.status_code == 200
    assert answer.json()['stats']['difficulty'] == pytest.approx(0.3)
    client.post('/study/answers', json={'session_id': sid, 'card_id': cards[1]['id'], 'correct': False, 'time_taken': 5})

    done = client.post(f'/study/sessions/{sid}/complete').json()
    assert done['session']['status'] == 'completed'
    assert done['streak']['streak_count'] == 1

    result = client.get(f'/study/sessions/{sid}/result').json()['result']
    assert (result['correct_count'], result['incorrect_count']) == (1, 1)
    assert result['accuracy'] == 0.5


@pytest.mark.integration
def test_study_session_errors(client, deck_with_cards):
    assert client.post('/study/sessions', json={'deck_ids': [], 'mode': 'flashcard'}).status_code == 400
    assert client.post('/study/sessions', json={'deck_ids': [1], 'mode': 'nope'}).status_code == 400
    assert client.get('/study/sessions/missing').status_code == 404
    assert client.get('/study/sessions/missing/result').status_code == 404
    assert client.get('/study/sessions/missing/cards', params={'deck_id': 'a,b'}).status_code == 400


@pytest.mark.integration
def test_session_deck_override(client, deck_with_cards, repo):
    deck, _ = deck_with_cards
    other = repo.create_deck('Other')
    repo.save_flashcards([{'front': 'Extra', 'back': 'Card'}], deck_id=other['id'])
    sid = client.post('/study/sessions', json={'deck_ids': [deck['id']]}).json()['session']['id']
    cards = client.get(f'/study/sessions/{sid}/cards', params={'deck_id': str(other['id'])}).json()['cards']
    assert [c['front'] for c in cards] == ['Extra']


@pytest.mark.integration
def test_card_choices(client, deck_with_cards):
    _, cards = deck_with_cards
    r = client.get(f"/study/cards/{cards[0]['id']}/choices")
    assert r.status_code == 200
    choices = r.json()['choices']
    assert len(choices) == 4
    assert [c['text'] for c in choices if c['is_correct']] == [cards[0]['back']]
    assert client.get('/study/cards/missing/choices').status_code == 404


@pytest.mark.integration
def test_card_multiple_choice(fake_openai, client, deck_with_cards):
    _, cards = deck_with_cards
    r = client.get(f"/study/cards/{cards[0]['id']}/multiple-choice")
    assert r.status_code == 200
    assert r.json()['card_id'] == cards[0]['id']
    assert len(r.json()['choices']) == 4


@pytest.mark.integration
def test_multiple_choice_batch(fake_openai, client, deck_with_cards):
    _, cards = deck_with_cards
    fake_openai.responses.append(json.dumps({'cards': [
        {'id': c['id'], 'choices': [{'id': str(i), 'text': f't{i}', 'isCorrect': i == 0} for i in range(4)]}
        for c in cards
    ]}))
    r = client.post('/study/multiple-choice/batch', json={'card_ids': [c['id'] for c in cards]})
    assert r.status_code == 200
    assert len(r.json()['cards']) == 3
    assert 'Deck: Biology' in fake_openai.calls[0]['messages'][-1]['content']


@pytest.mark.integration
def test_multiple_choice_batch_errors(fake_openai, client, deck_with_cards):
    _, cards = deck_with_cards
    assert client.post('/study/multiple-choice/batch', json={'card_ids': []}).status_code == 400
    assert client.post('/study/multiple-choice/batch', json={'card_ids': ['missing']}).status_code == 404
    fake_openai.responses.append(json.dumps({'cards': [{'id': cards[0]['id'], 'choices': []}]}))
    assert client.post('/study/multiple-choice/batch', json={'card_ids': [cards[0]['id']]}).status_code == 422


@pytest.mark.integration
def test_true_false_batch_inline_cards(fake_openai, client):
    r = client.post('/study/true-false/batch', json={'cards': [{'id': 'c1', 'front': 'Plants', 'back': 'use light'}, {'id': 'c2', 'front': 'Roots', 'back': 'absorb water'}]})
    assert r.status_code == 200
    questions = r.json()['questions']
    assert questions['c1'][0]['statement'] == 'Plants use light.'
    assert questions['c2'][1]['is_true'] is False


@pytest.mark.integration
def test_true_false_batch_requires_cards(client):
    assert client.post('/study/true-false/batch', json={}).status_code == 400


@pytest.mark.integration
def test_true_false_batch_caches_only_model_statements(fake_openai, client, monkeypatch, mock_redis_client):
    monkeypatch.setenv('REDIS_CACHE_ENABLED', 'true')
    body = {'cards': [{'id': 'c1', 'front': 'Plants', 'back': 'use light'}]}
    fake_openai.errors.append(openai.APIConnectionError(request=httpx.Request('POST', 'https://api.openai.com/v1/chat/completions')))

    first = client.post('/study/true-false/batch', json=body)
    assert first.status_code == 200
    assert first.json()['questions']['c1'][0]['statement'] == 'Plants is use light.'
    assert mock_redis_client.store == {}

    second = client.post('/study/true-false/batch', json=body)
    assert len(fake_openai.calls) == 2
    assert second.json()['questions']['c1'][1]['statement'] == 'Plants use sound.'

    third = client.post('/study/true-false/batch', json=body)
    assert len(fake_openai.calls) == 2
    assert third.json()['questions'] == second.json()['questions']


@pytest.mark.integration
def test_ingest_upload_text(mock_boto3_client, client):
    r = client.post('/ingest/upload', files={'file': ('notes.txt', 'Cells are units of life.'.encode('utf-8'), 'text/plain')})
    assert r.status_code == 200
    assert r.json()['text'] == 'Cells are units of life.'
    assert r.json()['kind'] == 'text'


@pytest.mark.integration
def test_ingest_upload_unsupported(mock_boto3_client, client):
    r = client.post('/ingest/upload', files={'file': ('archive.zip', b'PK\x03\x04', 'application/zip')})
    assert r.status_code == 400


@pytest.mark.integration
def test_ingest_upload_audio(fake_openai, mock_boto3_client, client):
    r = client.post('/ingest/upload', files={'file': ('talk.mp3', b'ID3fake', 'audio/mpeg')})
    assert r.status_code == 200
    assert r.json()['kind'] == 'audio'


@pytest.mark.integration
def test_ingest_image(mock_boto3_client, client, sample_image_bytes):
    r = client.post('/ingest/image', files={'file': ('board.png', sample_image_bytes, 'image/png')})
    assert r.status_code == 201
    assert r.json()['key'].startswith('public/images/')
    bad = client.post('/ingest/image', files={'file': ('doc.pdf', b'%PDF', 'application/pdf')})
    assert bad.status_code == 400


@pytest.mark.integration
def test_ingest_website(monkeypatch, client):
    class Resp:
        text = '<html><body><p>Mitochondria make ATP.</p></body></html>'

        def raise_for_status(self):
            pass

    monkeypatch.setattr('requests.get', lambda *a, **k: Resp())
    r = client.post('/ingest/website', json={'url': 'example.com'})
    assert r.status_code == 200
    assert r.json()['text'] == 'Website: https://example.com\n\nMitochondria make ATP.'


@pytest.mark.integration
def test_ingest_youtube(monkeypatch, client):
    from flashdeck.ingest import web

    monkeypatch.delenv('YOUTUBE_API_KEY', raising=False)
    monkeypatch.setattr(web, 'fetch_transcript', lambda vid: [{'text': 'Welcome', 'start': 0.0, 'duration': 1.0}])
    r = client.post('/ingest/youtube', json={'url': 'https://youtu.be/dQw4w9WgXcQ'})
    assert r.status_code == 200
    assert r.json()['video_id'] == 'dQw4w9WgXcQ'
    assert client.post('/ingest/youtube', json={'url': 'https://vimeo.com/1'}).status_code == 400


@pytest.mark.integration
def test_chat(fake_openai, client):
    r = client.post('/chat', json={'messages': [{'role': 'user', 'content': 'Explain photosynthesis'}]})
    assert r.status_code == 200
    assert r.json()['message']['role'] == 'assistant'
    assert client.post('/chat', json={'messages': []}).status_code == 400
