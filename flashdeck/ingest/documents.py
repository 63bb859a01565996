import io
import codecs
import pathlib
from typing import Optional, Tuple, Dict, Any

import fitz  # PyMuPDF
import docx

from flashdeck.utils import get_logger

LOG = get_logger()

PDF_TYPES = ('application/pdf',)
WORD_TYPES = (
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'application/msword',
)
TEXT_TYPES = ('text/plain', 'text/markdown')
TEXT_ENCODINGS = ('utf-8-sig', 'cp932', 'iso-8859-1')
UTF16_BOMS = (codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)


class IngestError(Exception):
    pass


class UnsupportedFileType(IngestError):
    pass


class EmptyDocumentError(IngestError):
    pass


class DocumentParseError(IngestError):
    pass


def detect_kind(content_type: Optional[str], filename: Optional[str]) -> Optional[str]:
    ct = (content_type or '').split(';')[0].strip().lower()
    ext = pathlib.Path(filename or '').suffix.lower()
    if ct in PDF_TYPES or ext == '.pdf':
        return 'pdf'
    if ct in WORD_TYPES or ext in ('.docx', '.doc'):
        return 'word'
    if ct in TEXT_TYPES or ext in ('.txt', '.md'):
        return 'text'
    if ct.startswith('audio/'):
        return 'audio'
    if ct.startswith('image/'):
        return 'image'
    return None


def extract_pdf_text(content: bytes) -> Tuple[str, Dict[str, Any]]:
    try:
        with fitz.open(stream=content, filetype='pdf') as doc:
            parts = [page.get_text() for page in doc]
            page_count = len(doc)
    except Exception as e:
        # PyMuPDF surfaces broken input as FileDataError or raw mupdf errors
        LOG.exception('pdf_parse_failed', exc_info=True)
        raise DocumentParseError(f'PDF processing failed: {e}') from e
    text = '\n\n'.join(p.strip() for p in parts if p.strip())
    return text, {'page_count': page_count}


def extract_word_text(content: bytes) -> Tuple[str, Dict[str, Any]]:
    try:
        document = docx.Document(io.BytesIO(content))
    except Exception as e:
        # python-docx raises a mix of zipfile/lxml/KeyError for broken files
        LOG.exception('docx_parse_failed', exc_info=True)
        raise DocumentParseError(f'Word processing failed: {e}') from e
    parts = [p.text.strip() for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(' | '.join(cells))
    return '\n'.join(parts), {'paragraph_count': len(document.paragraphs), 'table_count': len(document.tables)}


def extract_plain_text(content: bytes) -> Tuple[str, Dict[str, Any]]:
    # UTF-16 accepts almost any even-length input, so it is only tried behind a BOM
    encodings = TEXT_ENCODINGS
    if content.startswith(UTF16_BOMS):
        encodings = ('utf-16',) + TEXT_ENCODINGS
    for encoding in encodings:
        try:
            text = content.decode(encoding)
        except UnicodeDecodeError:
            continue
        return text, {'encoding': encoding.replace('-sig', '')}
    raise DocumentParseError('Unable to decode text file')


def extract_document_text(content: bytes, content_type: Optional[str], filename: Optional[str] = None) -> Dict[str, Any]:
    """Extract plain text from an uploaded PDF, Word or text document."""
    kind = detect_kind(content_type, filename)
    if kind == 'pdf':
        text, meta = extract_pdf_text(content)
    elif kind == 'word':
        text, meta = extract_word_text(content)
    elif kind == 'text':
        text, meta = extract_plain_text(content)
    else:
        raise UnsupportedFileType(f'Unsupported file type: {content_type or filename}')
    if not text.strip():
        raise EmptyDocumentError('No text could be extracted from the document')
    LOG.info('document_extracted', extra={'kind': kind, 'text_length': len(text), 'file_name': filename})
    return {'text': text, 'kind': kind, 'metadata': {'filename': filename, 'size': len(content), **meta}}
