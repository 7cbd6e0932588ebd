"""
Status conditions as used by K8s API conventions (``metav1.Condition``).

The conditions are a list of mappings keyed by their ``type``: there is at most
one condition of each type in a list. The merging follows the same semantics
as the ``SetStatusCondition`` helper of the K8s API machinery: the conditions
are updated in place, new ones are appended, and none are ever removed.
"""
import copy
import datetime
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Literal

Condition = Mapping[str, Any]
ConditionStatus = Literal['True', 'False', 'Unknown']


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def find_condition(
        conditions: Iterable[Condition] | None,
        type: str,
) -> Condition | None:
    for condition in conditions or []:
        if condition.get('type') == type:
            return condition
    return None


def get_condition_status(
        conditions: Iterable[Condition] | None,
        type: str,
) -> str | None:
    condition = find_condition(conditions, type)
    return None if condition is None else condition.get('status')


def is_condition_true(
        conditions: Iterable[Condition] | None,
        type: str,
) -> bool:
    return get_condition_status(conditions, type) == 'True'


def merge_conditions(
        existing: Sequence[Condition] | None,
        *conditions: Condition,
        now: str | None = None,
) -> list[dict[str, Any]]:
    """
    Merge the new conditions into the existing ones by their types.

    The existing conditions of other types are preserved as they are.
    The transition time of an existing condition is only changed
    if its status has actually changed. The input lists are not modified.
    """
    merged: list[dict[str, Any]] = [dict(copy.deepcopy(c)) for c in existing or []]
    for condition in conditions:
        current = next((c for c in merged if c.get('type') == condition.get('type')), None)
        if current is None:
            added = dict(copy.deepcopy(condition))
            added.setdefault('lastTransitionTime', now or _now())
            merged.append(added)
            continue

        if current.get('status') != condition.get('status'):
            current['status'] = condition.get('status')
            current['lastTransitionTime'] = condition.get('lastTransitionTime') or now or _now()
        for field in ['reason', 'message', 'observedGeneration']:
            if field in condition:
                current[field] = condition[field]
    return merged
