from datetime import date

import pytest

from ledgerflow.agents.models import ToolContext
from ledgerflow.agents.reconciliation import (
    ColumnConfig,
    InMemoryTaskDataSource,
    MatchingRules,
    ReconciliationInput,
    SourceConfig,
    description_similarity,
    extract_entity_keys,
    match_rate,
    match_rows,
    parse_amount,
    parse_date,
    register_reconciliation_tools,
)
from ledgerflow.agents.tools import ToolRegistry

COLUMNS = [
    ColumnConfig(key="date", type="date"),
    ColumnConfig(key="amount", type="amount"),
    ColumnConfig(key="description", type="text"),
]


def recon(a_rows, b_rows, **rules):
    return ReconciliationInput(
        source_a_rows=a_rows,
        source_b_rows=b_rows,
        source_a=SourceConfig(label="Bank", columns=COLUMNS),
        source_b=SourceConfig(label="Ledger", columns=COLUMNS),
        rules=MatchingRules(**rules),
    )


BANK = [
    {"date": "2024-01-05", "amount": "$1,000.00", "description": "Invoice 1"},
    {"date": "2024-01-06", "amount": "(50.00)", "description": "Refund"},
    {"date": "2024-01-07", "amount": "12.50", "description": "Monthly fee"},
    {"date": "2024-01-10", "amount": "300", "description": "Wire"},
]
LEDGER = [
    {"date": "2024-01-05", "amount": 1000, "description": "Invoice 1"},
    {"date": "2024-01-06", "amount": 50, "description": "Refund"},
    {"date": "2024-01-20", "amount": 300, "description": "Wire"},
]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$1,234.50", 1234.5),
        ("(12.00)", -12.0),
        (" 7 ", 7.0),
        (7, 7.0),
        ("", None),
        ("abc", None),
        (None, None),
        (True, None),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize(
    "raw", ["2024-01-05", "01/05/2024", "05.01.2024", "2024/01/05", "2024-01-05T10:00:00Z"]
)
def test_parse_date_formats(raw):
    assert parse_date(raw) == date(2024, 1, 5)


def test_parse_date_rejects_garbage():
    assert parse_date("soon") is None
    assert parse_date("") is None
    assert parse_date(None) is None


def test_match_rows_exact_with_sign_flip():
    result = match_rows(recon(BANK, LEDGER))

    assert [(p.a_index, p.b_index) for p in result.matched] == [(0, 0), (1, 1)]
    assert all(p.method == "exact" for p in result.matched)
    assert result.unmatched_a == [2, 3]
    assert result.unmatched_b == [2]
    assert result.variance == 12.5


def test_exception_categories():
    result = match_rows(recon(BANK, LEDGER))

    categories = {(e.source, e.row_index): e.category for e in result.exceptions}
    assert categories == {
        ("a", 2): "bank_fee",
        ("a", 3): "timing_difference",
        ("b", 2): "timing_difference",
    }


def test_date_window_widens_matches():
    result = match_rows(recon(BANK, LEDGER, date_window_days=15))

    assert len(result.matched) == 3
    assert result.unmatched_a == [2]
    assert result.unmatched_b == []
    assert [e.category for e in result.exceptions] == ["bank_fee"]


def test_tolerance_matching():
    a_rows = [{"date": "2024-01-05", "amount": "100.00", "description": "x"}]
    b_rows = [{"date": "2024-01-05", "amount": "100.40", "description": "x"}]

    assert match_rows(recon(a_rows, b_rows)).matched == []

    result = match_rows(recon(a_rows, b_rows, amount_match="tolerance", amount_tolerance=0.5))
    [pair] = result.matched
    assert pair.method == "tolerance"
    assert pair.amount_difference == 0.4


def test_closest_date_wins():
    a_rows = [{"date": "2024-01-05", "amount": 100}]
    b_rows = [{"date": "2024-01-07", "amount": 100}, {"date": "2024-01-05", "amount": 100}]

    result = match_rows(recon(a_rows, b_rows, date_window_days=5))

    assert result.matched[0].b_index == 1
    assert result.unmatched_b == [0]


def test_matching_is_deterministic():
    data = recon(BANK, LEDGER, date_window_days=3)
    assert match_rows(data) == match_rows(data)


def test_missing_amount_column_is_an_error():
    data = ReconciliationInput(
        source_a_rows=[{"x": 1}],
        source_b_rows=[{"x": 1}],
        source_a=SourceConfig(columns=[ColumnConfig(key="x", type="text")]),
        source_b=SourceConfig(columns=COLUMNS),
    )
    with pytest.raises(ValueError, match="amount column"):
        match_rows(data)


def test_non_string_text_cells_are_coerced():
    a_rows = [
        {"date": "2024-01-05", "amount": 10, "description": 4411},
        {"date": "2024-01-05", "amount": 20, "description": None},
    ]
    b_rows = [{"date": "2024-01-05", "amount": 99, "description": 7.5}]

    result = match_rows(recon(a_rows, b_rows, fuzzy_description=True))

    descriptions = {(e.source, e.row_index): e.description for e in result.exceptions}
    assert descriptions == {("a", 0): "4411", ("a", 1): None, ("b", 0): "7.5"}
    assert {e.category for e in result.exceptions} == {"missing_entry"}


def test_description_similarity_ignores_case_and_punctuation():
    assert description_similarity("ACH Payment - ACME Corp.", "ach payment acme corp") == 1.0
    assert description_similarity("Invoice 1", None) == 0.0
    assert description_similarity("Rent", "Payroll") < 0.7


def test_fuzzy_pass_matches_similar_descriptions_outside_date_window():
    result = match_rows(recon(BANK, LEDGER, fuzzy_description=True))

    fuzzy = [p for p in result.matched if p.method == "fuzzy"]
    assert [(p.a_index, p.b_index, p.similarity) for p in fuzzy] == [(3, 2, 1.0)]
    assert result.unmatched_a == [2]
    assert result.unmatched_b == []
    assert [e.category for e in result.exceptions] == ["bank_fee"]


def test_fuzzy_pass_needs_similar_text_and_nearby_dates():
    a_rows = [
        {"date": "2024-01-01", "amount": 300, "description": "Wire to ACME"},
        {"date": "2024-01-01", "amount": 80, "description": "Office rent"},
    ]
    b_rows = [
        {"date": "2024-03-01", "amount": 300, "description": "Wire to ACME"},
        {"date": "2024-01-09", "amount": 80, "description": "Payroll run"},
    ]

    result = match_rows(recon(a_rows, b_rows, fuzzy_description=True))

    assert result.matched == []
    assert result.unmatched_a == [0, 1]


def test_match_rate_rounds_to_percent():
    assert match_rate(7, 10) == 70
    assert match_rate(2, 3) == 67
    assert match_rate(1, 8) == 13
    assert match_rate(5, 8) == 63
    assert match_rate(0, 0) == 0


def test_extract_entity_keys_is_distinct_and_capped():
    keys = extract_entity_keys(
        recon(BANK, LEDGER), ("description",), rows_per_source=50, limit=3
    )
    assert keys == ["Invoice 1", "Refund", "Monthly fee"]


def tool_context(**ref):
    return ToolContext(
        organization_id="org-1",
        agent_definition_id="agent-1",
        execution_id="exec-1",
        task_context_ref=ref,
    )


@pytest.mark.asyncio
async def test_deterministic_matching_tool(data_source):
    tools = ToolRegistry()
    register_reconciliation_tools(tools, data_source)

    result = await tools.execute(
        "run_deterministic_matching",
        {"reconciliation_run_id": "recon-1"},
        tool_context(),
    )

    assert result.success
    assert result.data["matched_count"] == 7
    assert result.data["match_rate"] == 70
    assert result.data["unmatched_a"] == 3
    assert result.data["unmatched_b"] == 1
    assert result.data["variance"] == -675.0


@pytest.mark.asyncio
async def test_classify_exceptions_tool_reads_task_context(data_source):
    tools = ToolRegistry()
    register_reconciliation_tools(tools, data_source)

    result = await tools.execute(
        "classify_exceptions", {}, tool_context(reconciliation_run_id="recon-1")
    )

    assert result.data["classified"] == 4
    assert result.data["categories"] == {"missing_entry": 4}


@pytest.mark.asyncio
async def test_tools_fail_without_uploaded_data(data_source):
    tools = ToolRegistry()
    register_reconciliation_tools(tools, data_source)

    result = await tools.execute(
        "run_deterministic_matching", {"reconciliation_run_id": "missing"}, tool_context()
    )

    assert not result.success
    assert result.error == "run_deterministic_matching failed: Run has no source data uploaded yet"


@pytest.mark.asyncio
async def test_recommend_resolution_tool(data_source):
    tools = ToolRegistry()
    register_reconciliation_tools(tools, data_source)

    result = await tools.execute(
        "recommend_resolution",
        {"exception_index": 2, "category": "bank_fee", "reason": "Monthly fee", "confidence": 0.8},
        tool_context(),
    )

    assert result.success
    assert result.data["recommendation"]["category"] == "bank_fee"
    assert [spec.name for spec in tools.specs()] == [
        "run_deterministic_matching",
        "run_fuzzy_matching",
        "classify_exceptions",
        "recommend_resolution",
    ]


@pytest.mark.asyncio
async def test_fuzzy_matching_tool_adds_to_exact_matches():
    tools = ToolRegistry()
    register_reconciliation_tools(
        tools, InMemoryTaskDataSource({"recon-2": recon(BANK, LEDGER)})
    )

    exact = await tools.execute(
        "run_deterministic_matching", {"reconciliation_run_id": "recon-2"}, tool_context()
    )
    fuzzy = await tools.execute(
        "run_fuzzy_matching", {"reconciliation_run_id": "recon-2"}, tool_context()
    )

    assert exact.data["matched_count"] == 2
    assert fuzzy.success
    assert fuzzy.data["matched_count"] == 3
    assert fuzzy.data["fuzzy_matches"] == 1
    assert fuzzy.data["match_rate"] == 75
    assert fuzzy.data["exceptions_classified"] == 1
    assert fuzzy.data["variance"] == 12.5
