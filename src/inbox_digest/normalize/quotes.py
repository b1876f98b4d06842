"""
Quote, signature and disclaimer removal for plain-text email bodies.
"""
import re
from dataclasses import dataclass
from typing import List, Tuple
import structlog

logger = structlog.get_logger()


@dataclass
class RemovedSpan:
    """A block removed from the body, kept for metrics and debugging."""
    type: str  # "quoted", "signature", "disclaimer", "image_ref"
    length: int
    content: str


# Applied in order; each pattern is (removal_type, compiled regex).
CLEANUP_RULES = [
    # "On <date>, <person> wrote:" followed by its quoted lines
    ("quoted", re.compile(r'\n*On\s+.{10,80}\s+wrote:\s*\n(?:>[^\n]*\n?)*', re.IGNORECASE)),
    # Remaining ">" prefixed blocks
    ("quoted", re.compile(r'\n*(?:^|\n)(?:>[^\n]*\n?)+')),
    # "-- " signature delimiter to end of body
    ("signature", re.compile(r'\n--\s*\n[\s\S]*$')),
    ("signature", re.compile(r'\n*Sent from my [\w\s]+$', re.IGNORECASE)),
    ("signature", re.compile(
        r'\n*(?:Best regards|Kind regards|Regards|Cheers|Thanks|Best),?\s*\n[\s\S]{0,200}$',
        re.IGNORECASE)),
    ("disclaimer", re.compile(
        r'\n*(?:This email is confidential|CONFIDENTIALITY NOTICE|DISCLAIMER'
        r'|If you (?:are not|received this in error))[\s\S]*$',
        re.IGNORECASE)),
    ("image_ref", re.compile(r'\[(?:image|cid:[^\]]*)\]', re.IGNORECASE)),
    ("image_ref", re.compile(r'\[https?://[^\]]*\.(?:png|gif|jpg|jpeg|bmp)\]', re.IGNORECASE)),
]


class QuoteCleaner:
    """Strip reply chains, signatures, disclaimers and inline image references."""
    
    def __init__(self, metrics=None):
        self.metrics = metrics
    
    def clean(self, text: str) -> Tuple[str, List[RemovedSpan]]:
        """
        Clean an email body.
        
        Returns:
            Tuple of (cleaned_text, removed_spans)
        """
        if not text:
            return "", []
        
        removed: List[RemovedSpan] = []
        
        for removal_type, pattern in CLEANUP_RULES:
            def _drop(match, removal_type=removal_type):
                removed.append(RemovedSpan(type=removal_type,
                                           length=len(match.group(0)),
                                           content=match.group(0)[:200]))
                return ""
            text = pattern.sub(_drop, text)
        
        text = re.sub(r'\n{3,}', '\n\n', text).strip()
        
        if self.metrics:
            for span in removed:
                self.metrics.record_cleaner_removed_chars(span.length, span.type)
        
        if removed:
            logger.debug("Removed quoted/signature blocks",
                         blocks=len(removed),
                         chars=sum(s.length for s in removed))
        return text, removed
