import enum
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .models import RubricRecord, RunRecord
from .storage import Store


logger = logging.getLogger("uvicorn.error")


class RubricSource(enum.IntEnum):
    """Where an analysis rubric came from, in lookup order."""

    SNAPSHOT = 1
    BY_ID = 2
    DEFAULT_TEMPLATE = 3


@dataclass
class ResolvedCriterion:
    name: str
    description: str = ""
    id: Optional[str] = None
    weight: float = 1.0


@dataclass
class ResolvedRubric:
    source: RubricSource
    name: str
    criteria: List[ResolvedCriterion]
    guiding_questions: List[str] = field(default_factory=list)
    target_duration_seconds: Optional[int] = None
    max_duration_seconds: Optional[int] = None
    rubric_id: Optional[str] = None


def _criteria_from(items: Any) -> List[ResolvedCriterion]:
    if not isinstance(items, list):
        return []
    criteria: List[ResolvedCriterion] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        weight = item.get("weight")
        criteria.append(
            ResolvedCriterion(
                name=str(item.get("name") or item.get("label") or "Unknown"),
                description=str(item.get("description") or item.get("desc") or ""),
                id=item.get("id"),
                weight=float(weight) if isinstance(weight, (int, float)) and not isinstance(weight, bool) else 1.0,
            )
        )
    return criteria


def _questions_from(rubric_json: Optional[dict]) -> List[str]:
    questions = (rubric_json or {}).get("guiding_questions")
    if not isinstance(questions, list):
        return []
    return [q.strip() for q in questions if isinstance(q, str) and q.strip()]


def _from_snapshot(snapshot: dict) -> ResolvedRubric:
    return ResolvedRubric(
        source=RubricSource.SNAPSHOT,
        name=snapshot.get("name") or snapshot.get("title") or "Custom Rubric",
        criteria=_criteria_from(snapshot.get("criteria")),
        guiding_questions=_questions_from(snapshot),
        target_duration_seconds=snapshot.get("target_duration_seconds"),
        max_duration_seconds=snapshot.get("max_duration_seconds"),
    )


def _from_record(record: RubricRecord, source: RubricSource) -> ResolvedRubric:
    rubric_json = record.rubric_json if isinstance(record.rubric_json, dict) else None
    criteria = _criteria_from((rubric_json or {}).get("criteria")) or _criteria_from(record.criteria)
    target = (rubric_json or {}).get("target_duration_seconds")
    maximum = (rubric_json or {}).get("max_duration_seconds")
    return ResolvedRubric(
        source=source,
        name=record.name or record.title or "Unknown Rubric",
        criteria=criteria,
        guiding_questions=_questions_from(rubric_json),
        target_duration_seconds=target if target is not None else record.target_duration_seconds,
        max_duration_seconds=maximum if maximum is not None else record.max_duration_seconds,
        rubric_id=record.id,
    )


def _lookup(
    source: RubricSource,
    store: Store,
    run: RunRecord,
    requested_rubric_id: Optional[str],
) -> Optional[ResolvedRubric]:
    if source is RubricSource.SNAPSHOT:
        if isinstance(run.rubric_snapshot_json, dict):
            return _from_snapshot(run.rubric_snapshot_json)
        return None
    if source is RubricSource.BY_ID:
        rubric_id = requested_rubric_id or run.rubric_id
        record = store.get_rubric(rubric_id) if rubric_id else None
        return _from_record(record, source) if record else None
    record = store.get_default_template()
    return _from_record(record, source) if record else None


def resolve_rubric(
    store: Store,
    run: RunRecord,
    requested_rubric_id: Optional[str] = None,
) -> Optional[ResolvedRubric]:
    """Pick the rubric for analysing ``run``.

    Sources are tried in ``RubricSource`` order: the run's snapshot, then the
    rubric row by id (a requested id wins over the run's own), then the
    earliest-created template. A source only counts when it yields at least
    one named criterion. Returns None when no source does.
    """
    for source in sorted(RubricSource):
        resolved = _lookup(source, store, run, requested_rubric_id)
        if resolved is None:
            continue
        if any(c.name and c.name != "Unknown" for c in resolved.criteria):
            logger.info("run_id=%s rubric_source=%s rubric_id=%s", run.id, source.name, resolved.rubric_id)
            return resolved
        logger.warning("run_id=%s rubric_source=%s skipped reason=no_named_criteria", run.id, source.name)
    return None
