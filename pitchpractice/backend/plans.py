import enum
import logging
from typing import Iterable, Optional

from .models import utc_now
from .storage import Store


logger = logging.getLogger("uvicorn.error")


class Plan(str, enum.Enum):
    FREE = "free"
    DAYPASS = "daypass"
    STARTER = "starter"
    COACH = "coach"

    @property
    def rank(self) -> int:
        return PLAN_RANK[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> "Plan":
        """Unknown or missing values map to ``FREE``."""
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.FREE


PLAN_RANK = {Plan.FREE: 0, Plan.DAYPASS: 1, Plan.STARTER: 2, Plan.COACH: 3}
PURCHASABLE_PLANS = (Plan.STARTER, Plan.COACH, Plan.DAYPASS)


def highest_plan(plans: Iterable[Optional[str]]) -> Plan:
    best = Plan.FREE
    for value in plans:
        plan = Plan.parse(value)
        if plan.rank > best.rank:
            best = plan
    return best


def resolve_plan(store: Store, user_id: Optional[str], session_id: Optional[str] = None) -> Plan:
    """Best non-expired plan for a user or anonymous session; any failure is ``FREE``."""
    if not user_id and not session_id:
        return Plan.FREE
    try:
        entitlements = store.list_active_entitlements(user_id=user_id, session_id=session_id, now=utc_now())
    except Exception:
        logger.warning("plan_lookup_failed user_id=%s defaulting=free", user_id, exc_info=True)
        return Plan.FREE
    return highest_plan(record.plan for record in entitlements)


def has_coach_access(plan: Optional[str]) -> bool:
    return Plan.parse(plan) is Plan.COACH


def has_daypass_access(plan: Optional[str]) -> bool:
    return Plan.parse(plan) is Plan.DAYPASS


def can_edit_rubrics(plan: Optional[str]) -> bool:
    return has_coach_access(plan)


def can_view_premium_insights(plan: Optional[str]) -> bool:
    return has_coach_access(plan) or has_daypass_access(plan)


def can_view_progress_panel(plan: Optional[str]) -> bool:
    return has_coach_access(plan)
