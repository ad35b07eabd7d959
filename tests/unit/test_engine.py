import pytest

from ledgerflow.workflows.engine import (
    build_idempotency_key,
    evaluate_condition,
    find_matching_rules,
    get_next_step,
    match_conditions,
    resolve_field_value,
)
from ledgerflow.workflows.models import (
    AutomationRule,
    ConditionSpec,
    StepOutcome,
    StepResult,
    TriggerContext,
    WorkflowDefinition,
)


def definition(*steps):
    return WorkflowDefinition.model_validate({"steps": list(steps)})


def result(step_id, data=None, step_type="action"):
    return StepResult(
        step_id=step_id, type=step_type, outcome=StepOutcome.SUCCESS, data=data
    )


BRANCHING = definition(
    {"id": "check", "type": "condition", "on_true": "yes", "on_false": "no"},
    {"id": "yes", "type": "action", "next_step_id": "done"},
    {"id": "no", "type": "action"},
    {"id": "done", "type": "action"},
)


def test_entry_step_is_first_in_list():
    assert get_next_step(BRANCHING, None, []).id == "check"
    assert get_next_step(definition(), None, []) is None


def test_condition_routes_on_persisted_result():
    true_results = [result("check", {"condition_result": True}, "condition")]
    false_results = [result("check", {"condition_result": False}, "condition")]

    assert get_next_step(BRANCHING, "check", true_results).id == "yes"
    assert get_next_step(BRANCHING, "check", false_results).id == "no"


def test_next_step_id_then_list_order():
    assert get_next_step(BRANCHING, "yes", []).id == "done"
    assert get_next_step(BRANCHING, "no", []).id == "done"
    assert get_next_step(BRANCHING, "done", []) is None
    assert get_next_step(BRANCHING, "unknown", []) is None


def test_unset_branch_falls_through_to_list_order():
    graph = definition(
        {"id": "check", "type": "condition", "on_true": "c"},
        {"id": "b", "type": "action"},
        {"id": "c", "type": "action"},
    )
    false_results = [result("check", {"condition_result": False}, "condition")]

    assert get_next_step(graph, "check", false_results).id == "b"


def test_navigation_is_deterministic():
    results = [result("check", {"condition_result": True}, "condition")]
    first = [get_next_step(BRANCHING, s, results).id for s in ("check", "yes", "no")]
    second = [get_next_step(BRANCHING, s, results).id for s in ("check", "yes", "no")]
    assert first == second


def test_resolve_field_value_roots():
    results = [result("fetch", {"summary": {"match_rate": 92}})]
    trigger = TriggerContext(metadata={"status": "closed"})

    assert resolve_field_value("steps.fetch.summary.match_rate", results, trigger) == 92
    assert resolve_field_value("trigger.status", results, trigger) == "closed"
    assert resolve_field_value("steps.missing.value", results, trigger) is None
    assert resolve_field_value("other.value", results, trigger) is None


@pytest.mark.parametrize(
    "operator, expected, outcome",
    [
        ("gt", 90, True),
        ("gt", 95, False),
        ("gte", 92, True),
        ("lt", "100", True),
        ("lte", 91, False),
        ("eq", "92", True),
        ("eq", 92.0, True),
        ("neq", 92, False),
        ("contains", "9", True),
        ("gt", "lots", False),
    ],
)
def test_evaluate_condition_operators(operator, expected, outcome):
    results = [result("fetch", {"rate": 92})]
    condition = ConditionSpec(field="steps.fetch.rate", operator=operator, value=expected)

    assert evaluate_condition(condition, results, TriggerContext()) is outcome


def test_missing_value_is_false_for_every_operator():
    for operator in ("eq", "neq", "gt", "lt", "gte", "lte", "contains"):
        condition = ConditionSpec(field="steps.nope.rate", operator=operator, value=1)
        assert evaluate_condition(condition, [], TriggerContext()) is False


def test_boolean_equality_uses_text_form():
    results = [result("fetch", {"flag": True})]
    condition = ConditionSpec(field="steps.fetch.flag", operator="eq", value="true")

    assert evaluate_condition(condition, results, TriggerContext()) is True


def test_match_conditions_per_trigger_type():
    assert match_conditions("board_status_changed", {"target_status": "closed"}, {"status": "closed"})
    assert not match_conditions("board_status_changed", {"target_status": "closed"}, {"status": "open"})
    assert match_conditions("board_status_changed", {}, {"status": "open"})
    assert match_conditions("data_uploaded", {"target_status": "closed"}, {})
    assert not match_conditions("data_uploaded", {"config_id": "c1"}, {"config_id": "c2"})
    assert match_conditions("manual", {"anything": 1}, {})


def test_find_matching_rules_filters_org_type_and_active():
    rules = [
        AutomationRule(id="r1", organization_id="org-1", trigger_type="data_uploaded"),
        AutomationRule(id="r2", organization_id="org-2", trigger_type="data_uploaded"),
        AutomationRule(id="r3", organization_id="org-1", trigger_type="form_submitted"),
        AutomationRule(
            id="r4", organization_id="org-1", trigger_type="data_uploaded", is_active=False
        ),
    ]

    matched = find_matching_rules(rules, "data_uploaded", "org-1", {})

    assert [rule.id for rule in matched] == ["r1"]


def test_build_idempotency_key():
    assert build_idempotency_key("r1", "data_uploaded", "evt-1") == "r1:data_uploaded:evt-1"
