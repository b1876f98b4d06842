"""Utility helpers for locating versioned prompt templates."""

from __future__ import annotations

from typing import Dict


PROMPT_TEMPLATE_MAP: Dict[str, str] = {
    "classify.v1": "classify.v1.j2",
}


def get_prompt_template_path(template_name: str) -> str:
    """Return the Jinja template file for the given template key.

    Raises:
        KeyError: If the template key is unknown.
    """

    try:
        return PROMPT_TEMPLATE_MAP[template_name]
    except KeyError as exc:
        raise KeyError(
            f"Unknown prompt template '{template_name}'. Known templates: {sorted(PROMPT_TEMPLATE_MAP)}"
        ) from exc
