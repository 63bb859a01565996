import io
import pytest
import fitz
import docx

from flashdeck.ingest import extract_document_text, detect_kind, UnsupportedFileType, EmptyDocumentError, DocumentParseError


@pytest.mark.unit
@pytest.mark.parametrize('content_type,filename,expected', [
    ('application/pdf', 'a.bin', 'pdf'),
    (None, 'notes.PDF', 'pdf'),
    ('application/vnd.openxmlformats-officedocument.wordprocessingml.document', None, 'word'),
    ('text/plain; charset=utf-8', None, 'text'),
    (None, 'readme.md', 'text'),
    ('audio/mpeg', 'talk.mp3', 'audio'),
    ('image/png', 'board.png', 'image'),
    ('application/zip', 'x.zip', None),
])
def test_detect_kind(content_type, filename, expected):
    assert detect_kind(content_type, filename) == expected


@pytest.mark.unit
def test_extract_plain_text():
    res = extract_document_text('光合成 is photosynthesis'.encode('utf-8'), 'text/plain', 'notes.txt')
    assert res['kind'] == 'text'
    assert res['text'] == '光合成 is photosynthesis'
    assert res['metadata']['encoding'] == 'utf-8'


@pytest.mark.unit
@pytest.mark.parametrize('content,encoding', [
    ('光合成とは何ですか'.encode('cp932'), 'cp932'),
    ('光合成とは何ですか'.encode('utf-16'), 'utf-16'),
    ('光合成とは何ですか'.encode('utf-8-sig'), 'utf-8'),
])
def test_extract_plain_text_detects_japanese_encodings(content, encoding):
    res = extract_document_text(content, 'text/plain', 'notes.txt')
    assert res['text'] == '光合成とは何ですか'
    assert res['metadata']['encoding'] == encoding


@pytest.mark.unit
def test_extract_pdf_text():
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), 'Hello from a PDF')
    content = doc.tobytes()
    doc.close()
    res = extract_document_text(content, 'application/pdf', 'lecture.pdf')
    assert 'Hello from a PDF' in res['text']
    assert res['metadata']['page_count'] == 1


@pytest.mark.unit
def test_extract_word_text_includes_tables():
    document = docx.Document()
    document.add_paragraph('Cell biology')
    table = document.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = 'Organelle'
    table.rows[0].cells[1].text = 'Mitochondria'
    buf = io.BytesIO()
    document.save(buf)
    res = extract_document_text(buf.getvalue(), None, 'notes.docx')
    assert res['kind'] == 'word'
    assert 'Cell biology' in res['text']
    assert 'Organelle | Mitochondria' in res['text']


@pytest.mark.unit
def test_unsupported_and_empty_documents():
    with pytest.raises(UnsupportedFileType):
        extract_document_text(b'PK', 'application/zip', 'x.zip')
    with pytest.raises(EmptyDocumentError):
        extract_document_text(b'   \n', 'text/plain', 'blank.txt')


@pytest.mark.unit
def test_broken_documents_raise_parse_error():
    with pytest.raises(DocumentParseError):
        extract_document_text(b'not a pdf', 'application/pdf', 'broken.pdf')
    with pytest.raises(DocumentParseError):
        extract_document_text(b'not a docx', None, 'broken.docx')
