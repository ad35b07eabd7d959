"""Pure step navigation and condition evaluation.

Nothing here touches persistence or the clock; a replayed run must land on
the same branch it took before the crash.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .models import (
    AutomationRule,
    ConditionSpec,
    StepResult,
    StepType,
    TriggerContext,
    WorkflowDefinition,
    WorkflowStep,
)

CONDITION_RESULT_KEY = "condition_result"

# rule condition key -> trigger metadata key, per trigger type
_TRIGGER_CONDITION_FIELDS: Dict[str, Dict[str, str]] = {
    "board_created": {
        "board_cadence": "cadence",
        "target_status": "status",
        "config_id": "config_id",
        "lineage_id": "lineage_id",
    },
    "board_status_changed": {
        "board_cadence": "cadence",
        "target_status": "status",
        "config_id": "config_id",
        "lineage_id": "lineage_id",
    },
    "data_uploaded": {"config_id": "config_id"},
    "form_submitted": {
        "form_definition_id": "form_definition_id",
        "task_instance_id": "task_instance_id",
    },
}


def _find(definition: WorkflowDefinition, step_id: Optional[str]) -> Optional[WorkflowStep]:
    if step_id is None:
        return None
    return definition.get_step(step_id)


def _result_for(results: Sequence[StepResult], step_id: str) -> Optional[StepResult]:
    for result in results:
        if result.step_id == step_id:
            return result
    return None


def get_next_step(
    definition: WorkflowDefinition,
    completed_step_id: Optional[str],
    results: Sequence[StepResult],
) -> Optional[WorkflowStep]:
    """Return the step that follows ``completed_step_id``.

    ``None`` as the completed id yields the entry step. Condition steps route
    on their persisted ``condition_result`` to ``on_true``/``on_false`` and
    fall through to ``next_step_id`` and then list order when the chosen
    branch is unset. Returns ``None`` at the end of the graph or when the
    completed id is not part of the definition.
    """
    steps = definition.steps
    if not steps:
        return None
    if completed_step_id is None:
        return steps[0]

    current = definition.get_step(completed_step_id)
    if current is None:
        return None

    if current.type == StepType.CONDITION.value:
        result = _result_for(results, completed_step_id)
        branch = bool((result.data or {}).get(CONDITION_RESULT_KEY)) if result else False
        target = current.on_true if branch else current.on_false
        if target:
            return _find(definition, target)

    if current.next_step_id:
        return _find(definition, current.next_step_id)

    index = definition.index_of(completed_step_id)
    if 0 <= index < len(steps) - 1:
        return steps[index + 1]
    return None


def get_nested_value(source: Any, path: str) -> Any:
    current = source
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def resolve_field_value(
    field: str, results: Sequence[StepResult], trigger_context: TriggerContext
) -> Any:
    """Resolve ``steps.<id>.<path>`` or ``trigger.<path>``; anything else is ``None``."""
    parts = field.split(".")
    if parts[0] == "steps" and len(parts) >= 3:
        result = _result_for(results, parts[1])
        if result is None or not result.data:
            return None
        return get_nested_value(result.data, ".".join(parts[2:]))
    if parts[0] == "trigger" and len(parts) >= 2:
        return get_nested_value(trigger_context.metadata, ".".join(parts[1:]))
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate_condition(
    condition: ConditionSpec,
    results: Sequence[StepResult],
    trigger_context: TriggerContext,
) -> bool:
    """Evaluate ``condition`` against prior step data and trigger metadata.

    Missing values are false. ``gt``/``lt``/``gte``/``lte`` compare
    numerically (non-numeric operands are false), ``eq``/``neq`` compare the
    text forms and ``contains`` is a substring test.
    """
    value = resolve_field_value(condition.field, results, trigger_context)
    if value is None:
        return False

    operator = condition.operator
    if operator in ("gt", "lt", "gte", "lte"):
        left, right = _as_number(value), _as_number(condition.value)
        if left is None or right is None:
            return False
        if operator == "gt":
            return left > right
        if operator == "lt":
            return left < right
        if operator == "gte":
            return left >= right
        return left <= right
    if operator == "eq":
        return _as_text(value) == _as_text(condition.value)
    if operator == "neq":
        return _as_text(value) != _as_text(condition.value)
    if operator == "contains":
        return _as_text(condition.value) in _as_text(value)
    return False


def match_conditions(
    trigger_type: str, conditions: Mapping[str, Any], metadata: Mapping[str, Any]
) -> bool:
    """Check a rule's trigger conditions against the event metadata.

    Only the condition keys known for the trigger type are compared; an
    unset condition matches anything.
    """
    fields = _TRIGGER_CONDITION_FIELDS.get(trigger_type)
    if fields is None:
        return True
    for condition_key, metadata_key in fields.items():
        expected = conditions.get(condition_key)
        if expected and expected != metadata.get(metadata_key):
            return False
    return True


def find_matching_rules(
    rules: Iterable[AutomationRule],
    trigger_type: str,
    organization_id: str,
    metadata: Mapping[str, Any],
) -> List[AutomationRule]:
    return [
        rule
        for rule in rules
        if rule.is_active
        and rule.organization_id == organization_id
        and rule.trigger_type == trigger_type
        and match_conditions(trigger_type, rule.conditions, metadata)
    ]


def build_idempotency_key(rule_id: str, trigger_type: str, event_id: str) -> str:
    return f"{rule_id}:{trigger_type}:{event_id}"
