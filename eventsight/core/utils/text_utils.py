# eventsight/core/utils/text_utils.py
import json
import re
from typing import Any, Optional

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)


def clean_llm_response(text: str) -> str:
    """
    Clean LLM-generated text by removing common artifacts
    like markdown code block wrappers and excessive newlines.
    """
    if not text:
        return text

    # Remove markdown code block wrappers (```markdown ... ``` or ``` ... ```)
    text = re.sub(r'^```(?:markdown|md)?\s*\n', '', text, flags=re.MULTILINE)
    text = re.sub(r'\n```\s*$', '', text, flags=re.MULTILINE)

    text = text.strip()

    # Remove multiple consecutive newlines (more than 2)
    text = re.sub(r'\n{3,}', '\n\n', text)

    # Remove common summary prefixes that LLMs add
    for prefix in [r'^## Summary\s*', r'^Summary:\s*', r'^\*\*Summary\*\*:\s*']:
        text = re.sub(prefix, '', text, flags=re.IGNORECASE)

    return text.strip()


def strip_code_fence(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    if not text:
        return ""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def extract_json_object(text: str) -> Optional[Any]:
    """
    Parse a JSON object out of an LLM reply.

    Tries the fenced body first, then the outermost ``{...}`` span.
    Returns None when nothing parses.
    """
    body = strip_code_fence(text)
    for candidate in (body, _outer_braces(body)):
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _outer_braces(text: str) -> Optional[str]:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def truncate(text: str, limit: int, marker: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(marker))] + marker
