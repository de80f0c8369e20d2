from typing import Any, Dict, Iterable, Optional

from app.services.collaborators import UserProfile
from app.services.condition_evaluator import evaluate_all


def _as_set(values: Optional[Iterable[Any]]) -> set:
    return {str(v) for v in (values or [])}


def _attribute_filters_pass(user: UserProfile, audience: Dict[str, Any]) -> bool:
    user_types = _as_set(audience.get("userTypes"))
    if user_types and str(user.user_type) not in user_types:
        return False

    tags = _as_set(audience.get("tags"))
    if tags and not tags & _as_set(user.tags):
        return False

    course_ids = _as_set(audience.get("courseIds"))
    if course_ids and not course_ids & _as_set(user.course_ids):
        return False

    segment_ids = _as_set(audience.get("segmentIds"))
    if segment_ids and not segment_ids & _as_set(user.segment_ids):
        return False

    criteria = audience.get("behaviorCriteria") or []
    if criteria and not evaluate_all(criteria, user.as_variables()):
        return False

    return True


def matches(user: UserProfile, target_audience: Optional[Dict[str, Any]]) -> bool:
    """
    Exclusion list rejects first, inclusion list decides next, then the
    attribute filters are ANDed across categories. Empty audience matches all.
    """
    if not target_audience:
        return True

    user_id = str(user.id)

    if user_id in _as_set(target_audience.get("excludeUserIds")):
        return False

    include = _as_set(target_audience.get("includeUserIds"))
    if include:
        return user_id in include

    return _attribute_filters_pass(user, target_audience)
