from typing import Any, List, Optional

from .models import Criterion, ParsedRubric, Rubric
from .rubric_parser import DEFAULT_RUBRIC_NAME, FEWER_THAN_MIN_WARNING, MIN_CRITERIA, placeholder_criteria


NAME_KEYS = ("name", "title", "rubric_name")
CRITERIA_KEYS = ("criteria", "items")
CRITERION_NAME_KEYS = ("name", "label", "title", "key")
CRITERION_DESCRIPTION_KEYS = ("description", "desc", "details")
SCORING_GUIDE_KEYS = ("scoring_guide", "scoringGuide")


def _first_text(obj: dict, keys) -> Optional[str]:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= 0:
        return None
    return int(round(value))


def _weight(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 1.0
    return float(value)


def _coerce_criteria(raw_items: List[Any], warnings: List[str]) -> List[Criterion]:
    criteria: List[Criterion] = []
    dropped = 0
    for item in raw_items:
        if isinstance(item, str) and item.strip():
            item = {"name": item}
        if not isinstance(item, dict):
            dropped += 1
            continue
        name = _first_text(item, CRITERION_NAME_KEYS)
        if not name:
            dropped += 1
            continue
        criteria.append(
            Criterion(
                id=_first_text(item, ("id",)) or f"criterion_{len(criteria) + 1}",
                name=name,
                description=_first_text(item, CRITERION_DESCRIPTION_KEYS),
                weight=_weight(item.get("weight")),
                scoring_guide=_first_text(item, SCORING_GUIDE_KEYS),
            )
        )
    if dropped:
        warnings.append(f"Dropped {dropped} criteria without a usable name.")
    return criteria


def coerce_rubric(obj: Any) -> ParsedRubric:
    """Normalize loosely shaped rubric JSON into a ``Rubric``.

    Accepts common aliases (``title``/``rubric_name`` for the name, ``items``
    for the criteria, ``label``/``key`` for criterion names). Never raises;
    input without usable criteria gets placeholders and a warning.
    """
    warnings: List[str] = []
    if not isinstance(obj, dict):
        warnings.append("Rubric JSON is not an object; using placeholder criteria.")
        obj = {}

    raw_criteria = None
    for key in CRITERIA_KEYS:
        if isinstance(obj.get(key), list):
            raw_criteria = obj[key]
            break

    criteria = _coerce_criteria(raw_criteria or [], warnings)
    if not criteria:
        criteria = placeholder_criteria()
        warnings.append(
            "No criteria array found, so 3 placeholder criteria were added. "
            f"{FEWER_THAN_MIN_WARNING}."
        )
    elif len(criteria) < MIN_CRITERIA:
        warnings.append(f"{FEWER_THAN_MIN_WARNING} (found {len(criteria)}).")

    questions = obj.get("guiding_questions")
    guiding_questions = (
        [q.strip() for q in questions if isinstance(q, str) and q.strip()]
        if isinstance(questions, list)
        else []
    )

    rubric = Rubric(
        name=_first_text(obj, NAME_KEYS) or DEFAULT_RUBRIC_NAME,
        description=_first_text(obj, ("description",)),
        criteria=criteria,
        target_duration_seconds=_positive_int(obj.get("target_duration_seconds")),
        max_duration_seconds=_positive_int(obj.get("max_duration_seconds")),
        guiding_questions=guiding_questions,
        context_summary=_first_text(obj, ("context_summary",)),
    )
    return ParsedRubric(rubric=rubric, warnings=warnings)


def rubric_to_json(rubric: Rubric) -> dict:
    """Storage shape of a rubric; also carries ``title`` for older readers."""
    payload = rubric.model_dump()
    payload["title"] = rubric.name
    return payload
