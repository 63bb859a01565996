import os
import uuid
import pathlib
import tempfile
import mimetypes

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .logger import get_logger

LOG = get_logger()

TEMP_DIR = os.getenv('UPLOAD_TEMP_DIR', os.path.join(tempfile.gettempdir(), 'flashdeck'))
MAX_UPLOAD_SIZE_MB = int(os.getenv('MAX_UPLOAD_SIZE_MB', '25'))
MAX_UPLOAD_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024
MAX_IMAGE_SIZE_MB = int(os.getenv('MAX_IMAGE_SIZE_MB', '10'))
MAX_IMAGE_SIZE_BYTES = MAX_IMAGE_SIZE_MB * 1024 * 1024
IMAGE_KEY_PREFIX = os.getenv('AWS_S3_IMAGE_PREFIX', 'public/images')


class FileHandlerError(Exception):
    """Base error for upload handling."""


class FileTooLargeError(FileHandlerError):
    pass


class InvalidFileTypeError(FileHandlerError):
    pass


class FileUploadError(FileHandlerError):
    """Raised when a file cannot be stored in S3."""


class FileHandler:
    def __init__(self):
        self.bucket = os.getenv('AWS_S3_BUCKET')
        self.region = os.getenv('AWS_REGION')
        self.s3 = boto3.client(
            's3',
            region_name=self.region,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY')
        )
        pathlib.Path(TEMP_DIR).mkdir(parents=True, exist_ok=True)
        LOG.info('FileHandler initialized', extra={'temp_dir': TEMP_DIR, 'bucket': self.bucket})

    def validate_size(self, size: int, max_bytes: int = MAX_UPLOAD_SIZE_BYTES):
        if size > max_bytes:
            raise FileTooLargeError(f'File too large (max {max_bytes // (1024 * 1024)} MB)')

    def save_temp_file(self, content: bytes, filename: str = None) -> str:
        self.validate_size(len(content))
        # keep the extension so parsers that sniff it still work
        suffix = pathlib.Path(filename or '').suffix or ''
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=suffix, dir=TEMP_DIR)
        try:
            tmp.write(content)
        finally:
            tmp.close()
        LOG.info('Saved temp file', extra={'file': tmp.name, 'size': len(content)})
        return tmp.name

    def get_file_info(self, file_path: str):
        if not os.path.exists(file_path):
            raise FileNotFoundError(file_path)
        size = os.path.getsize(file_path)
        ext = pathlib.Path(file_path).suffix.lower()
        mime, _ = mimetypes.guess_type(file_path)
        return {
            'size_bytes': size,
            'size_mb': size / (1024 * 1024),
            'extension': ext,
            'mime_type': mime,
            'temp_file': pathlib.Path(file_path).name
        }

    def public_url(self, key: str) -> str:
        base = os.getenv('AWS_S3_PUBLIC_BASE_URL')
        if base:
            return f"{base.rstrip('/')}/{key}"
        if self.region:
            return f'https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}'
        return f'https://{self.bucket}.s3.amazonaws.com/{key}'

    def upload_image(self, content: bytes, filename: str, content_type: str) -> dict:
        if not content_type or not content_type.startswith('image/'):
            raise InvalidFileTypeError('Only image files are allowed')
        self.validate_size(len(content), MAX_IMAGE_SIZE_BYTES)
        if not self.bucket:
            raise FileUploadError('AWS_S3_BUCKET not configured')
        ext = pathlib.Path(filename or '').suffix.lstrip('.').lower() or (mimetypes.guess_extension(content_type) or '.bin').lstrip('.')
        key = f'{IMAGE_KEY_PREFIX}/{uuid.uuid4()}.{ext}'
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=content, ContentType=content_type, CacheControl='max-age=3600')
        except (ClientError, BotoCoreError) as e:
            LOG.exception('S3 upload failed', exc_info=True)
            raise FileUploadError(f'Failed to upload image to s3://{self.bucket}/{key}') from e
        url = self.public_url(key)
        LOG.info('Uploaded image to s3', extra={'bucket': self.bucket, 'key': key, 'size': len(content)})
        return {'url': url, 'key': key, 'size': len(content), 'content_type': content_type}

    def cleanup_temp_file(self, file_path: str):
        try:
            if file_path and os.path.exists(file_path) and os.path.commonpath([os.path.abspath(file_path), os.path.abspath(TEMP_DIR)]) == os.path.abspath(TEMP_DIR):
                os.remove(file_path)
                LOG.info('Removed temp file', extra={'file': file_path})
        except OSError:
            LOG.exception('Failed to cleanup temp file', exc_info=True)
