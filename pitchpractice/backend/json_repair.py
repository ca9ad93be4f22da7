import json
import re
from typing import Any, Optional


_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_GREEDY_OBJECT = re.compile(r"\{[\s\S]*\}")


def _first_balanced_object(text: str) -> Optional[str]:
    depth = 0
    start = -1
    for index, char in enumerate(text):
        if char == "{":
            if start == -1:
                start = index
            depth += 1
        elif char == "}" and start != -1:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _try_load(candidate: Optional[str]) -> Any:
    if candidate is None:
        raise ValueError("no candidate")
    return json.loads(candidate)


def parse_json_with_repair(raw_text: str) -> Any:
    """Parse model output that should be JSON but may be wrapped in prose or fences.

    Tries, in order: the whole text, a fenced ```json block, the first
    brace-balanced object, and the widest ``{...}`` span.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise ValueError("Model output is empty.")

    text = raw_text.strip()
    fenced = _FENCED_JSON.search(text)
    greedy = _GREEDY_OBJECT.search(text)
    candidates = [
        text,
        fenced.group(1) if fenced else None,
        _first_balanced_object(text),
        greedy.group(0) if greedy else None,
    ]
    for candidate in candidates:
        try:
            return _try_load(candidate)
        except ValueError:
            continue
    raise ValueError("Could not extract valid JSON from model output.")
