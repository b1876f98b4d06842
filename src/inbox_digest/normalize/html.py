"""
HTML to text normalization for email bodies.

- <script>/<style>/<svg>, hidden elements and tracking pixels are dropped
- Lists become markdown ("- " / "1. "), block elements become line breaks
- HTML entities are decoded and unicode punctuation normalised
- Falls back to regex tag stripping when the parser fails
"""
import re
import html
import unicodedata
from bs4 import BeautifulSoup
from typing import Tuple
import structlog

logger = structlog.get_logger()

HTML_TAG_RE = re.compile(r'<(?:[a-zA-Z][a-zA-Z0-9]*|/[a-zA-Z][a-zA-Z0-9]*|!--)[^>]*>')

BLOCK_TAGS = ["p", "div", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "table"]

UNICODE_REPLACEMENTS = {
    '\u201C': '"',   # Left double quote
    '\u201D': '"',   # Right double quote
    '\u2018': "'",   # Left single quote
    '\u2019': "'",   # Right single quote
    '\u00AB': '"',
    '\u00BB': '"',
    '\u2013': '-',   # En dash
    '\u2014': '--',  # Em dash
    '\u2212': '-',   # Minus sign
    '\u00A0': ' ',   # Non-breaking space
    '\u2002': ' ',
    '\u2003': ' ',
    '\u2009': ' ',
    '\u202F': ' ',
    '\u200B': '',    # Zero-width space
    '\uFEFF': '',    # BOM
    '\u2026': '...',
}


def looks_like_html(text: str) -> bool:
    return bool(text) and HTML_TAG_RE.search(text) is not None


class HTMLNormalizer:
    """HTML to text conversion with robust parsing."""
    
    def __init__(self, metrics=None):
        self.metrics = metrics
    
    def html_to_text(self, html_content: str) -> Tuple[str, bool]:
        """
        Convert HTML to clean text.
        
        Returns:
            Tuple of (normalized_text, parse_success)
        """
        if not html_content:
            return "", True
        
        try:
            soup = BeautifulSoup(html_content, 'html.parser')
            self._remove_unwanted_elements(soup)
            self._remove_hidden_elements(soup)
            self._convert_lists_to_markdown(soup)
            self._insert_line_breaks(soup)
            
            text = soup.get_text()
            text = self.clean_whitespace(text)
            text = html.unescape(text)
            text = self.normalize_unicode(text)
            return text, True
            
        except Exception as e:
            logger.warning("HTML parsing failed, using regex fallback",
                           error=str(e), error_type=type(e).__name__)
            if self.metrics:
                self.metrics.record_cleaner_error('html_parse_error')
            text = re.sub(r'<[^>]*>', '', html_content)
            text = html.unescape(text)
            return self.normalize_unicode(text), False
    
    def _remove_unwanted_elements(self, soup):
        for element in soup(["script", "style", "svg", "head"]):
            element.decompose()
        
        for img in soup.find_all('img'):
            src = img.get('src', '') or ''
            if src.startswith('cid:'):
                img.decompose()
                continue
            try:
                width = img.get('width', '')
                height = img.get('height', '')
                if (width and int(width) <= 1) or (height and int(height) <= 1):
                    img.decompose()
            except (ValueError, TypeError):
                pass
    
    def _remove_hidden_elements(self, soup):
        for element in soup.find_all(style=True):
            style = (element.get('style', '') or '').lower().replace(' ', '')
            if 'display:none' in style or 'visibility:hidden' in style:
                element.decompose()
    
    def _convert_lists_to_markdown(self, soup):
        for ul in soup.find_all('ul'):
            items = [f"- {li.get_text().strip()}" for li in ul.find_all('li', recursive=False)
                     if li.get_text().strip()]
            if items:
                ul.replace_with(soup.new_string('\n' + '\n'.join(items) + '\n'))
        
        for ol in soup.find_all('ol'):
            items = [f"{idx}. {li.get_text().strip()}"
                     for idx, li in enumerate(ol.find_all('li', recursive=False), 1)
                     if li.get_text().strip()]
            if items:
                ol.replace_with(soup.new_string('\n' + '\n'.join(items) + '\n'))
    
    def _insert_line_breaks(self, soup):
        for br in soup.find_all('br'):
            br.replace_with(soup.new_string('\n'))
        for block in soup.find_all(BLOCK_TAGS):
            block.append(soup.new_string('\n'))
    
    @staticmethod
    def clean_whitespace(text: str) -> str:
        """Collapse runs of spaces inside lines and limit blank lines to one."""
        lines = [re.sub(r'[ \t]+', ' ', line).strip() for line in text.splitlines()]
        text = '\n'.join(lines)
        return re.sub(r'\n{3,}', '\n\n', text).strip()
    
    @staticmethod
    def normalize_unicode(text: str) -> str:
        if not text:
            return text
        for unicode_char, replacement in UNICODE_REPLACEMENTS.items():
            text = text.replace(unicode_char, replacement)
        return unicodedata.normalize('NFC', text)
