"""Source material ingestion: documents, web pages, YouTube, audio and images"""

from .documents import (
    extract_document_text,
    detect_kind,
    IngestError,
    UnsupportedFileType,
    EmptyDocumentError,
    DocumentParseError,
)
from .web import (
    fetch_website_text,
    fetch_youtube_text,
    extract_video_id,
    normalize_url,
    html_to_text,
    WebFetchError,
    InvalidURLError,
)
from .media import (
    MediaProcessor,
    MediaProcessingError,
    MediaAPIError,
    MediaTimeoutError,
    SUPPORTED_IMAGE_TYPES,
)

__all__ = [
    'extract_document_text',
    'detect_kind',
    'IngestError',
    'UnsupportedFileType',
    'EmptyDocumentError',
    'DocumentParseError',
    'fetch_website_text',
    'fetch_youtube_text',
    'extract_video_id',
    'normalize_url',
    'html_to_text',
    'WebFetchError',
    'InvalidURLError',
    'MediaProcessor',
    'MediaProcessingError',
    'MediaAPIError',
    'MediaTimeoutError',
    'SUPPORTED_IMAGE_TYPES',
]
