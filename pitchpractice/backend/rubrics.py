import logging
from typing import Any, Dict, List, Optional

from .auth import AuthUser
from .errors import ApiError
from .models import CreateRubricRequest, RubricRecord, UpdateRubricRequest, utc_now
from .rubric_coercion import CRITERIA_KEYS, coerce_rubric, rubric_to_json
from .rubric_parser import MIN_CRITERIA
from .storage import Store, new_id


logger = logging.getLogger("uvicorn.error")

SCOPES = ("templates", "mine")


def _coerced_rubric_json(rubric_json: Dict[str, Any], title: str) -> dict:
    raw = dict(rubric_json)
    raw.setdefault("name", title)
    parsed = coerce_rubric(raw)
    supplied = any(isinstance(raw.get(key), list) and raw[key] for key in CRITERIA_KEYS)
    if not supplied or len(parsed.rubric.criteria) < MIN_CRITERIA:
        raise ApiError(
            400,
            f"At least {MIN_CRITERIA} criteria are required in rubric_json.criteria",
            details=parsed.warnings or None,
        )
    return rubric_to_json(parsed.rubric)


def _positive(value: Optional[int], name: str) -> Optional[int]:
    if value is not None and value <= 0:
        raise ApiError(400, f"{name} must be a positive number of seconds")
    return value


def list_rubrics(store: Store, scope: str, user: Optional[AuthUser]) -> List[RubricRecord]:
    if scope not in SCOPES:
        raise ApiError(400, 'Invalid scope. Use "templates" or "mine"')
    if scope == "templates":
        return store.list_rubrics(templates=True)
    if user is None:
        raise ApiError(401, "Unauthorized")
    return store.list_rubrics(templates=False, user_id=user.id)


def get_rubric(store: Store, rubric_id: str, user: Optional[AuthUser]) -> RubricRecord:
    rubric = store.get_rubric(rubric_id)
    if rubric is None:
        raise ApiError(404, "Rubric not found")
    if not rubric.is_template and (user is None or rubric.user_id != user.id):
        raise ApiError(403, "Unauthorized")
    return rubric


def create_rubric(store: Store, request: CreateRubricRequest, user: AuthUser) -> RubricRecord:
    title = request.title.strip()
    if not title:
        raise ApiError(400, "Title is required")
    rubric_json = _coerced_rubric_json(request.rubric_json, title)
    now = utc_now()
    record = store.insert_rubric(
        RubricRecord(
            id=new_id(),
            name=title,
            title=title,
            description=(request.description or "").strip() or None,
            user_id=user.id,
            is_template=False,
            rubric_json=rubric_json,
            criteria=rubric_json["criteria"],
            target_duration_seconds=_positive(
                request.target_duration_seconds or rubric_json.get("target_duration_seconds"),
                "target_duration_seconds",
            ),
            max_duration_seconds=_positive(
                request.max_duration_seconds or rubric_json.get("max_duration_seconds"),
                "max_duration_seconds",
            ),
            created_at=now,
            updated_at=now,
        )
    )
    logger.info("rubric_id=%s rubric_created user_id=%s criteria=%s", record.id, user.id, len(record.criteria))
    return record


def _editable_rubric(store: Store, rubric_id: str, user: AuthUser, action: str) -> RubricRecord:
    rubric = store.get_rubric(rubric_id)
    if rubric is None:
        raise ApiError(404, "Rubric not found")
    if rubric.is_template:
        raise ApiError(403, f"Cannot {action} template rubrics")
    if rubric.user_id != user.id:
        raise ApiError(403, "Unauthorized")
    return rubric


def update_rubric(store: Store, rubric_id: str, request: UpdateRubricRequest, user: AuthUser) -> RubricRecord:
    existing = _editable_rubric(store, rubric_id, user, "update")
    changes: Dict[str, Any] = {}
    if request.title is not None:
        title = request.title.strip()
        if not title:
            raise ApiError(400, "Title is required")
        changes["title"] = title
        changes["name"] = title
    if request.description is not None:
        changes["description"] = request.description.strip() or None
    if request.rubric_json is not None:
        rubric_json = _coerced_rubric_json(request.rubric_json, changes.get("title") or existing.name)
        changes["rubric_json"] = rubric_json
        changes["criteria"] = rubric_json["criteria"]
    if request.target_duration_seconds is not None:
        changes["target_duration_seconds"] = _positive(request.target_duration_seconds, "target_duration_seconds")
    if request.max_duration_seconds is not None:
        changes["max_duration_seconds"] = _positive(request.max_duration_seconds, "max_duration_seconds")
    if not changes:
        return existing
    return store.update_rubric(rubric_id, **changes)


def delete_rubric(store: Store, rubric_id: str, user: AuthUser) -> None:
    _editable_rubric(store, rubric_id, user, "delete")
    store.delete_rubric(rubric_id)
    logger.info("rubric_id=%s rubric_deleted user_id=%s", rubric_id, user.id)
