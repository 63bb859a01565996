import io
import os
import time
import base64
from typing import Optional, Dict, Any

from PIL import Image, UnidentifiedImageError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from openai import OpenAIError, APITimeoutError

from flashdeck.utils import get_logger, log_llm_call, get_openai_client, OpenAIClientError
from flashdeck.utils.openai_client import usage_tokens, message_content
from .documents import IngestError, UnsupportedFileType, EmptyDocumentError

LOG = get_logger()

OPENAI_VISION_MODEL = os.getenv('OPENAI_VISION_MODEL', os.getenv('OPENAI_MODEL', 'gpt-4o-mini'))
OPENAI_TRANSCRIPTION_MODEL = os.getenv('OPENAI_TRANSCRIPTION_MODEL', 'whisper-1')
MEDIA_MAX_TOKENS = int(os.getenv('MEDIA_MAX_TOKENS', '4000'))
OPENAI_RETRY_ATTEMPTS = int(os.getenv('OPENAI_RETRY_ATTEMPTS', '3'))
SUPPORTED_IMAGE_TYPES = ('image/jpeg', 'image/jpg', 'image/png', 'image/gif', 'image/webp')

IMAGE_EXTRACTION_PROMPT = (
    'Extract all text from this image. Keep the structure: reproduce tables as tables, '
    'lists as lists and paragraphs as paragraphs. Return only the extracted text.'
)


class MediaProcessingError(IngestError):
    pass


class MediaAPIError(MediaProcessingError):
    pass


class MediaTimeoutError(MediaProcessingError):
    pass


class MediaProcessor:
    _instance = None

    def __init__(self):
        if not os.getenv('OPENAI_API_KEY'):
            raise MediaProcessingError('OPENAI_API_KEY not set')
        self.vision_model = OPENAI_VISION_MODEL
        self.transcription_model = OPENAI_TRANSCRIPTION_MODEL
        LOG.info('MediaProcessor initialized', extra={'vision_model': self.vision_model, 'transcription_model': self.transcription_model})

    @classmethod
    def get_instance(cls) -> 'MediaProcessor':
        if cls._instance is None:
            cls._instance = MediaProcessor()
        return cls._instance

    def _client(self):
        try:
            return get_openai_client()
        except OpenAIClientError as e:
            raise MediaProcessingError(str(e)) from e

    @retry(stop=stop_after_attempt(OPENAI_RETRY_ATTEMPTS), wait=wait_exponential(multiplier=1, max=10), retry=retry_if_exception_type((MediaAPIError, MediaTimeoutError)), reraise=True)
    def transcribe_audio(self, content: bytes, filename: str, content_type: Optional[str] = None, request_id: Optional[str] = None) -> Dict[str, Any]:
        start = time.time()
        try:
            resp = self._client().audio.transcriptions.create(
                model=self.transcription_model,
                file=(filename or 'audio', content, content_type or 'application/octet-stream'),
            )
        except APITimeoutError as e:
            LOG.exception('transcription_timeout', exc_info=True)
            raise MediaTimeoutError(str(e)) from e
        except OpenAIError as e:
            LOG.exception('transcription_api_error', exc_info=True)
            raise MediaAPIError(str(e)) from e
        text = (getattr(resp, 'text', None) or '').strip()
        duration_ms = int((time.time() - start) * 1000)
        log_llm_call(request_id, self.transcription_model, 0, 0, duration_ms)
        if not text:
            raise EmptyDocumentError('Transcription returned no text')
        return {'text': text, 'kind': 'audio', 'metadata': {'filename': filename, 'size': len(content), 'model': self.transcription_model}}

    def _validate_image(self, content: bytes, content_type: str) -> Dict[str, Any]:
        if (content_type or '').lower() not in SUPPORTED_IMAGE_TYPES:
            raise UnsupportedFileType(f'Unsupported image type: {content_type}')
        try:
            with Image.open(io.BytesIO(content)) as img:
                img.verify()
                return {'format': img.format, 'width': img.width, 'height': img.height}
        except (UnidentifiedImageError, OSError) as e:
            raise UnsupportedFileType(f'Invalid image data: {e}') from e

    @retry(stop=stop_after_attempt(OPENAI_RETRY_ATTEMPTS), wait=wait_exponential(multiplier=1, max=10), retry=retry_if_exception_type((MediaAPIError, MediaTimeoutError)), reraise=True)
    def _vision_call(self, data_url: str, request_id: Optional[str] = None) -> str:
        start = time.time()
        try:
            resp = self._client().chat.completions.create(
                model=self.vision_model,
                messages=[{
                    'role': 'user',
                    'content': [
                        {'type': 'text', 'text': IMAGE_EXTRACTION_PROMPT},
                        {'type': 'image_url', 'image_url': {'url': data_url}},
                    ],
                }],
                max_tokens=MEDIA_MAX_TOKENS,
            )
        except APITimeoutError as e:
            LOG.exception('image_extraction_timeout', exc_info=True)
            raise MediaTimeoutError(str(e)) from e
        except OpenAIError as e:
            LOG.exception('image_extraction_api_error', exc_info=True)
            raise MediaAPIError(str(e)) from e
        duration_ms = int((time.time() - start) * 1000)
        prompt_tokens, completion_tokens = usage_tokens(resp)
        log_llm_call(request_id, self.vision_model, prompt_tokens, completion_tokens, duration_ms)
        return message_content(resp)

    def extract_image_text(self, content: bytes, content_type: str, filename: Optional[str] = None, request_id: Optional[str] = None) -> Dict[str, Any]:
        image_info = self._validate_image(content, content_type)
        data_url = f'data:{content_type};base64,{base64.b64encode(content).decode()}'
        text = (self._vision_call(data_url, request_id=request_id) or '').strip()
        if not text:
            raise EmptyDocumentError('No text found in the image')
        return {'text': text, 'kind': 'image', 'metadata': {'filename': filename, 'size': len(content), **image_info}}
