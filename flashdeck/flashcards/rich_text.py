from typing import Optional

from bs4 import BeautifulSoup

ALLOWED_TAGS = ('p', 'strong', 'em', 'mark', 'ul', 'ol', 'li', 'blockquote', 'h4', 'h5', 'br', 'code')
DROPPED_TAGS = ('script', 'style', 'iframe', 'object', 'embed')


def sanitize_rich_text(html: Optional[str]) -> Optional[str]:
    """Reduce an HTML fragment to the tags flashcards may render.

    Disallowed tags are unwrapped so their text survives; script-like tags
    are removed with their content. All attributes are dropped.
    """
    if html is None or not str(html).strip():
        return None
    soup = BeautifulSoup(str(html), 'html.parser')
    for tag in soup.find_all(DROPPED_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
        else:
            tag.attrs = {}
    cleaned = str(soup).strip()
    return cleaned or None


def plain_text(html: Optional[str]) -> str:
    if not html:
        return ''
    return BeautifulSoup(html, 'html.parser').get_text(' ', strip=True)
