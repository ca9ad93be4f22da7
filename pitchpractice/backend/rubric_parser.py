"""Deterministic rubric text parser.

Recognizes three layouts, tried in order; the first one that yields any
criteria wins:

1. ``Criteria: Name - description; Name - description; ...``
2. numbered or bulleted lines (``1. Name - description``, ``- Name: description``)
3. pipe- or tab-delimited table rows (``name | description | weight``)

When nothing matches, three placeholder criteria are returned with a warning.
"""

import re
from typing import List, Optional, Tuple

from .models import Criterion, ParsedRubric, Rubric


MIN_CRITERIA = 3
DEFAULT_RUBRIC_NAME = "Untitled Rubric"
FEWER_THAN_MIN_WARNING = "Rubric has fewer than 3 criteria"

_SEMICOLON_BLOCK = re.compile(r"^[ \t]*criteria[ \t]*[:\-][ \t]*(\S.*)$", re.IGNORECASE | re.MULTILINE)
_LIST_ITEM = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.+?)\s*$")
_TABLE_SEPARATOR_CELL = re.compile(r"^:?-{2,}:?$")
_NAME_LABEL = re.compile(
    r"^[ \t]*(?:rubric[ \t]+)?(?:title|name|rubric)[ \t]*[:\-][ \t]*(\S.*?)[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_DESCRIPTION_LABEL = re.compile(
    r"^[ \t]*(?:description|summary)[ \t]*[:\-][ \t]*(\S.*?)[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_DURATION_VALUE = r"(\d+(?:\.\d+)?)\s*(seconds|second|secs|sec|s|minutes|minute|mins|min|m)\b"
_MAX_DURATION = re.compile(r"\b(?:max|maximum)\b[^\d\n]{0,40}?" + _DURATION_VALUE, re.IGNORECASE)
_TARGET_DURATION = re.compile(r"\b(?:target|duration|time)\b[^\d\n]{0,40}?" + _DURATION_VALUE, re.IGNORECASE)
_NAME_SEPARATORS = (r"\s[-–—]\s", r":\s*", r"[-–—]")
_HEADER_CELLS = {"name", "criterion", "criteria"}
_LABEL_NAMES = {
    "title",
    "name",
    "rubric",
    "rubric name",
    "description",
    "summary",
    "target",
    "duration",
    "target duration",
    "time",
    "max",
    "maximum",
    "max duration",
    "maximum duration",
}


def _split_name_description(text: str) -> Tuple[str, Optional[str]]:
    for separator in _NAME_SEPARATORS:
        parts = re.split(separator, text, maxsplit=1)
        if len(parts) == 2 and parts[0].strip():
            description = parts[1].strip()
            return parts[0].strip(), description or None
    return text.strip(), None


def _make_criterion(index: int, name: str, description: Optional[str], weight: float = 1.0) -> Criterion:
    return Criterion(
        id=f"criterion_{index + 1}",
        name=name[:120],
        description=description,
        weight=weight,
    )


def _parse_semicolon_block(text: str) -> List[Criterion]:
    match = _SEMICOLON_BLOCK.search(text)
    if not match:
        return []
    criteria: List[Criterion] = []
    for segment in match.group(1).split(";"):
        segment = segment.strip()
        if not segment:
            continue
        name, description = _split_name_description(segment)
        if name:
            criteria.append(_make_criterion(len(criteria), name, description))
    return criteria


def _parse_list_lines(text: str) -> List[Criterion]:
    criteria: List[Criterion] = []
    for line in text.splitlines():
        match = _LIST_ITEM.match(line)
        if not match:
            continue
        name, description = _split_name_description(match.group(1))
        if not name or name.lower() in _LABEL_NAMES:
            continue
        criteria.append(_make_criterion(len(criteria), name, description))
    return criteria


def _table_cells(line: str) -> List[str]:
    cells = [cell.strip() for cell in re.split(r"\||\t", line)]
    while cells and not cells[0]:
        cells.pop(0)
    while cells and not cells[-1]:
        cells.pop()
    return cells


def _parse_weight(value: str) -> Optional[float]:
    try:
        return float(value.rstrip("%").strip())
    except ValueError:
        return None


def _parse_table_rows(text: str) -> List[Criterion]:
    criteria: List[Criterion] = []
    for line in text.splitlines():
        if "|" not in line and "\t" not in line:
            continue
        cells = _table_cells(line)
        if not cells or not cells[0]:
            continue
        if all(_TABLE_SEPARATOR_CELL.match(cell) for cell in cells if cell):
            continue
        if cells[0].lower() in _HEADER_CELLS:
            continue
        description = cells[1] if len(cells) > 1 and cells[1] else None
        weight = _parse_weight(cells[2]) if len(cells) > 2 else None
        criteria.append(
            _make_criterion(len(criteria), cells[0], description, weight if weight is not None else 1.0)
        )
    return criteria


def _to_seconds(value: str, unit: str) -> int:
    amount = float(value)
    if unit.lower().startswith("m"):
        amount *= 60
    return int(round(amount))


def _parse_durations(text: str) -> Tuple[Optional[int], Optional[int]]:
    target: Optional[int] = None
    maximum: Optional[int] = None
    for line in text.splitlines():
        if _LIST_ITEM.match(line) or "|" in line or "\t" in line:
            continue
        max_match = _MAX_DURATION.search(line)
        if max_match:
            if maximum is None:
                maximum = _to_seconds(max_match.group(1), max_match.group(2))
            continue
        target_match = _TARGET_DURATION.search(line)
        if target_match and target is None:
            target = _to_seconds(target_match.group(1), target_match.group(2))
    return target, maximum


def placeholder_criteria() -> List[Criterion]:
    return [
        _make_criterion(index, f"Criterion {index + 1}", "Describe what this criterion evaluates.")
        for index in range(MIN_CRITERIA)
    ]


def parse_rubric_text(text: str) -> ParsedRubric:
    text = text if isinstance(text, str) else ""
    warnings: List[str] = []

    criteria: List[Criterion] = []
    for strategy in (_parse_semicolon_block, _parse_list_lines, _parse_table_rows):
        criteria = strategy(text)
        if criteria:
            break

    if not criteria:
        criteria = placeholder_criteria()
        warnings.append(
            "No criteria detected, so 3 placeholder criteria were added. "
            f"{FEWER_THAN_MIN_WARNING}; edit the placeholders before saving."
        )
    elif len(criteria) < MIN_CRITERIA:
        warnings.append(f"{FEWER_THAN_MIN_WARNING} (found {len(criteria)}).")

    name_match = _NAME_LABEL.search(text)
    description_match = _DESCRIPTION_LABEL.search(text)
    target, maximum = _parse_durations(text)

    rubric = Rubric(
        name=name_match.group(1)[:200] if name_match else DEFAULT_RUBRIC_NAME,
        description=description_match.group(1) if description_match else None,
        criteria=criteria,
        target_duration_seconds=target,
        max_duration_seconds=maximum,
    )
    return ParsedRubric(rubric=rubric, warnings=warnings)
