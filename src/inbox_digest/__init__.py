"""
Inbox Digest - email triage with LLM importance scoring.

Pipeline version: 0.3.0
Prompt version: classify.v1
"""

__version__ = "0.3.0"
PIPELINE_VERSION = "0.3.0"
DEFAULT_PROMPT_VERSION = "classify.v1"

__all__ = [
    "__version__",
    "PIPELINE_VERSION",
    "DEFAULT_PROMPT_VERSION"
]
