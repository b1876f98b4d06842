"""
Email body cleaning: HTML to text, then quote/signature removal.
"""
from html import unescape

from inbox_digest.normalize.html import HTMLNormalizer, looks_like_html
from inbox_digest.normalize.quotes import QuoteCleaner

DEFAULT_MAX_LENGTH = 3000


def clean_body(raw, max_length: int = DEFAULT_MAX_LENGTH, metrics=None) -> str:
    """
    Turn a raw message body into compact text for classification.

    Pure and total: empty or non-string input yields ``""``. The result is at
    most ``max_length`` characters.
    """
    if not raw or not isinstance(raw, str):
        return ""

    normalizer = HTMLNormalizer(metrics=metrics)
    if looks_like_html(raw):
        text, _ = normalizer.html_to_text(raw)
    else:
        text = normalizer.normalize_unicode(unescape(raw))

    text, _ = QuoteCleaner(metrics=metrics).clean(text)

    if len(text) > max_length:
        text = text[:max_length]
    return text


__all__ = ["clean_body", "HTMLNormalizer", "QuoteCleaner", "DEFAULT_MAX_LENGTH"]
