import os
import re
import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import requests
from bs4 import BeautifulSoup
from youtube_transcript_api import YouTubeTranscriptApi, CouldNotRetrieveTranscript

from flashdeck.utils import get_logger
from .documents import IngestError

LOG = get_logger()

WEB_FETCH_TIMEOUT = float(os.getenv('WEB_FETCH_TIMEOUT', '15'))
YOUTUBE_API_URL = os.getenv('YOUTUBE_API_URL', 'https://www.googleapis.com/youtube/v3/videos')
YOUTUBE_TRANSCRIPT_LANGUAGES = [s.strip() for s in os.getenv('YOUTUBE_TRANSCRIPT_LANGUAGES', 'ja,en').split(',') if s.strip()]
BROWSER_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'ja,en-US;q=0.9,en;q=0.8',
}

YOUTUBE_URL_RE = re.compile(r'^(https?://)?(www\.|m\.)?(youtube\.com|youtu\.be)/.+', re.IGNORECASE)
VIDEO_ID_RE = re.compile(r'(?:v=|youtu\.be/|embed/|shorts/|live/|/v/)([A-Za-z0-9_-]{11})')


class WebFetchError(IngestError):
    pass


class InvalidURLError(IngestError):
    pass


def normalize_url(url: str) -> str:
    url = (url or '').strip()
    if not url:
        raise InvalidURLError('URL is required')
    if not re.match(r'^https?://', url, re.IGNORECASE):
        url = 'https://' + url
    return url


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    text = soup.get_text(' ')
    return re.sub(r'\s+', ' ', text).strip()


def fetch_website_text(url: str, request_id: Optional[str] = None) -> Dict[str, Any]:
    url = normalize_url(url)
    start = time.time()
    try:
        resp = requests.get(url, headers=BROWSER_HEADERS, timeout=WEB_FETCH_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as e:
        LOG.warning('website_fetch_failed', extra={'url': url, 'error': str(e), 'request_id': request_id})
        raise WebFetchError(f'Failed to fetch {url}: {e}') from e
    text = html_to_text(resp.text)
    fetch_ms = int((time.time() - start) * 1000)
    info = {
        'url': url,
        'text_length': len(text),
        'fetched_at': datetime.now(timezone.utc).isoformat(),
        'fetch_time': fetch_ms,
    }
    return {'text': f'Website: {url}\n\n{text}', 'website_info': info}


def extract_video_id(url: str) -> str:
    if not url or not YOUTUBE_URL_RE.match(url.strip()):
        raise InvalidURLError('Not a valid YouTube URL')
    m = VIDEO_ID_RE.search(url)
    if not m:
        raise InvalidURLError('Could not find a video id in the URL')
    return m.group(1)


def fetch_video_info(video_id: str) -> Dict[str, Any]:
    api_key = os.getenv('YOUTUBE_API_KEY')
    placeholder = {
        'title': f'YouTube video {video_id}',
        'description': '',
        'published_at': None,
        'channel_title': None,
    }
    if not api_key:
        return placeholder
    try:
        resp = requests.get(YOUTUBE_API_URL, params={'part': 'snippet', 'id': video_id, 'key': api_key}, timeout=WEB_FETCH_TIMEOUT)
        resp.raise_for_status()
        items = resp.json().get('items') or []
    except (requests.RequestException, ValueError) as e:
        LOG.warning('youtube_info_failed', extra={'video_id': video_id, 'error': str(e)})
        return placeholder
    if not items:
        return placeholder
    snippet = items[0].get('snippet', {})
    return {
        'title': snippet.get('title') or placeholder['title'],
        'description': snippet.get('description') or '',
        'published_at': snippet.get('publishedAt'),
        'channel_title': snippet.get('channelTitle'),
    }


def fetch_transcript(video_id: str) -> List[Dict[str, Any]]:
    fetched = YouTubeTranscriptApi().fetch(video_id, languages=YOUTUBE_TRANSCRIPT_LANGUAGES)
    return [{'text': s.text, 'start': s.start, 'duration': s.duration} for s in fetched]


def fetch_youtube_text(url: str, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Captions plus basic video info as one text block for flashcard generation.

    Videos without an available transcript are not an error: the result is
    flagged with ``needs_transcription`` and carries a note instead of captions.
    """
    video_id = extract_video_id(url)
    info = fetch_video_info(video_id)
    needs_transcription = False
    try:
        segments = fetch_transcript(video_id)
        captions = ' '.join(s['text'] for s in segments).strip()
    except (CouldNotRetrieveTranscript, requests.RequestException) as e:
        LOG.warning('youtube_transcript_unavailable', extra={'video_id': video_id, 'error': str(e), 'request_id': request_id})
        segments = []
        captions = ''
    if not captions:
        needs_transcription = True
        captions = 'No captions are available for this video.'
    text = '\n'.join([
        f"Title: {info['title']}",
        f"Published: {info.get('published_at') or 'unknown'}",
        f'Video ID: {video_id}',
        '',
        'Description:',
        info.get('description') or '',
        '',
        'Captions:',
        captions,
    ])
    return {
        'text': text,
        'video_id': video_id,
        'video_info': info,
        'segment_count': len(segments),
        'needs_transcription': needs_transcription,
    }
