"""Deterministic reconciliation matching and the tools built on it.

``match_rows`` is the straight-line matcher the agent runner falls back to
when the reasoning loop cannot finish. It is pure: the same rows, column
configs and rules always give the same pairs.
"""

from __future__ import annotations

import difflib
import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Mapping, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from .models import AgentRecommendation, ToolContext, ToolResult
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

ColumnType = Literal["amount", "date", "text", "reference"]

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d.%m.%Y", "%Y/%m/%d")
_TOKEN_RE = re.compile(r"[a-z0-9]+")

FUZZY_DATE_WINDOW_DAYS = 31


class ColumnConfig(BaseModel):
    key: str
    type: ColumnType = "text"


class SourceConfig(BaseModel):
    label: str = ""
    columns: List[ColumnConfig] = Field(default_factory=list)

    def first_key(self, column_type: ColumnType) -> Optional[str]:
        for column in self.columns:
            if column.type == column_type:
                return column.key
        return None


class MatchingRules(BaseModel):
    amount_match: Literal["exact", "tolerance"] = "exact"
    amount_tolerance: float = 0.0
    date_window_days: int = 0
    fuzzy_description: bool = False
    fuzzy_threshold: float = 0.7


class ReconciliationInput(BaseModel):
    """Raw rows and configuration of one reconciliation run."""

    source_a_rows: List[Dict[str, Any]] = Field(default_factory=list)
    source_b_rows: List[Dict[str, Any]] = Field(default_factory=list)
    source_a: SourceConfig = Field(default_factory=SourceConfig)
    source_b: SourceConfig = Field(default_factory=SourceConfig)
    rules: MatchingRules = Field(default_factory=MatchingRules)


class MatchPair(BaseModel):
    a_index: int
    b_index: int
    method: Literal["exact", "tolerance", "fuzzy"]
    amount_difference: float = 0.0
    similarity: Optional[float] = None


class ReconciliationException(BaseModel):
    source: Literal["a", "b"]
    row_index: int
    category: str
    amount: Optional[float] = None
    description: Optional[str] = None


class MatchingResult(BaseModel):
    matched: List[MatchPair] = Field(default_factory=list)
    unmatched_a: List[int] = Field(default_factory=list)
    unmatched_b: List[int] = Field(default_factory=list)
    exceptions: List[ReconciliationException] = Field(default_factory=list)
    variance: float = 0.0


def parse_amount(value: Any) -> Optional[float]:
    """Parse ``$1,234.50`` / ``(12.00)`` style amounts; parentheses mean negative."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace("$", "").replace(",", "").replace(" ", "")
    if not text:
        return None
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    try:
        amount = float(text)
    except ValueError:
        return None
    return -amount if negative else amount


def parse_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _amount_difference(a: float, b: float, rules: MatchingRules) -> Optional[float]:
    """Distance between two amounts if they match under ``rules`` (sign flips allowed)."""
    limit = 0.01
    if rules.amount_match == "tolerance":
        limit = max(rules.amount_tolerance, 0.01)
    difference = min(abs(a - b), abs(a + b))
    return difference if difference <= limit else None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def description_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Similarity of two descriptions in ``[0, 1]``, ignoring case and punctuation."""
    if not a or not b:
        return 0.0
    left = " ".join(_TOKEN_RE.findall(a.lower()))
    right = " ".join(_TOKEN_RE.findall(b.lower()))
    if not left or not right:
        return 0.0
    return difflib.SequenceMatcher(None, left, right).ratio()


def _classify(
    amount: Optional[float],
    description: Optional[str],
    counterpart_amounts: Sequence[Optional[float]],
    rules: MatchingRules,
) -> str:
    if description and "fee" in description.lower():
        return "bank_fee"
    if amount is not None and any(
        other is not None and _amount_difference(amount, other, rules) is not None
        for other in counterpart_amounts
    ):
        return "timing_difference"
    if amount is None:
        return "unparseable_amount"
    return "missing_entry"


def _day_gap(left: Optional[date], right: Optional[date]) -> int:
    if left is None or right is None:
        return 0
    return abs((left - right).days)


def match_rows(data: ReconciliationInput) -> MatchingResult:
    """Greedy one-to-one matching of source A rows against source B rows.

    A pair matches when the amounts agree (exactly, within a cent, or within
    the configured tolerance, with sign flips allowed) and, when both sides
    have a date column, the dates fall within ``date_window_days``. Among
    candidates the closest date wins, then the smaller amount difference,
    then the lower row index.

    With ``fuzzy_description`` set, a second pass pairs the leftovers whose
    amounts agree and whose descriptions are at least ``fuzzy_threshold``
    similar, as long as the dates are no more than
    ``FUZZY_DATE_WINDOW_DAYS`` apart. The most similar description wins.
    """
    rules = data.rules
    a_amount_key = data.source_a.first_key("amount")
    b_amount_key = data.source_b.first_key("amount")
    if a_amount_key is None or b_amount_key is None:
        raise ValueError("Both sources need an amount column to match on")
    a_date_key = data.source_a.first_key("date")
    b_date_key = data.source_b.first_key("date")
    a_text_key = data.source_a.first_key("text")
    b_text_key = data.source_b.first_key("text")

    a_amounts = [parse_amount(row.get(a_amount_key)) for row in data.source_a_rows]
    b_amounts = [parse_amount(row.get(b_amount_key)) for row in data.source_b_rows]
    a_dates = [parse_date(row.get(a_date_key)) if a_date_key else None for row in data.source_a_rows]
    b_dates = [parse_date(row.get(b_date_key)) if b_date_key else None for row in data.source_b_rows]
    a_texts = [_text(row.get(a_text_key)) if a_text_key else None for row in data.source_a_rows]
    b_texts = [_text(row.get(b_text_key)) if b_text_key else None for row in data.source_b_rows]

    used_b: set[int] = set()
    matched: List[MatchPair] = []
    unmatched_a: List[int] = []

    for a_index, a_amount in enumerate(a_amounts):
        best: Optional[tuple] = None
        if a_amount is not None:
            for b_index, b_amount in enumerate(b_amounts):
                if b_index in used_b or b_amount is None:
                    continue
                difference = _amount_difference(a_amount, b_amount, rules)
                if difference is None:
                    continue
                day_gap = _day_gap(a_dates[a_index], b_dates[b_index])
                if day_gap > rules.date_window_days:
                    continue
                candidate = (day_gap, difference, b_index)
                if best is None or candidate < best:
                    best = candidate
        if best is None:
            unmatched_a.append(a_index)
            continue
        _, difference, b_index = best
        used_b.add(b_index)
        matched.append(
            MatchPair(
                a_index=a_index,
                b_index=b_index,
                method="exact" if difference < 0.01 else "tolerance",
                amount_difference=round(difference, 2),
            )
        )

    if rules.fuzzy_description and a_text_key and b_text_key:
        still_unmatched: List[int] = []
        for a_index in unmatched_a:
            a_amount = a_amounts[a_index]
            best = None
            if a_amount is not None:
                for b_index, b_amount in enumerate(b_amounts):
                    if b_index in used_b or b_amount is None:
                        continue
                    difference = _amount_difference(a_amount, b_amount, rules)
                    if difference is None:
                        continue
                    day_gap = _day_gap(a_dates[a_index], b_dates[b_index])
                    if day_gap > max(rules.date_window_days, FUZZY_DATE_WINDOW_DAYS):
                        continue
                    similarity = description_similarity(a_texts[a_index], b_texts[b_index])
                    if similarity < rules.fuzzy_threshold:
                        continue
                    candidate = (-similarity, day_gap, difference, b_index)
                    if best is None or candidate < best:
                        best = candidate
            if best is None:
                still_unmatched.append(a_index)
                continue
            similarity, _, difference, b_index = best
            used_b.add(b_index)
            matched.append(
                MatchPair(
                    a_index=a_index,
                    b_index=b_index,
                    method="fuzzy",
                    amount_difference=round(difference, 2),
                    similarity=round(-similarity, 2),
                )
            )
        unmatched_a = still_unmatched

    unmatched_b = [i for i in range(len(b_amounts)) if i not in used_b]

    exceptions: List[ReconciliationException] = []
    for a_index in unmatched_a:
        exceptions.append(
            ReconciliationException(
                source="a",
                row_index=a_index,
                amount=a_amounts[a_index],
                description=a_texts[a_index],
                category=_classify(
                    a_amounts[a_index], a_texts[a_index], [b_amounts[i] for i in unmatched_b], rules
                ),
            )
        )
    for b_index in unmatched_b:
        exceptions.append(
            ReconciliationException(
                source="b",
                row_index=b_index,
                amount=b_amounts[b_index],
                description=b_texts[b_index],
                category=_classify(
                    b_amounts[b_index], b_texts[b_index], [a_amounts[i] for i in unmatched_a], rules
                ),
            )
        )

    variance = sum(a_amounts[i] or 0.0 for i in unmatched_a) - sum(
        b_amounts[i] or 0.0 for i in unmatched_b
    )
    return MatchingResult(
        matched=matched,
        unmatched_a=unmatched_a,
        unmatched_b=unmatched_b,
        exceptions=exceptions,
        variance=round(variance, 2),
    )


def match_rate(matched: int, total_a: int) -> int:
    """Whole-number percentage of source A rows matched, rounding halves up."""
    return int(matched * 100 / total_a + 0.5) if total_a else 0


def extract_entity_keys(
    data: ReconciliationInput,
    fields: Sequence[str],
    rows_per_source: int,
    limit: int,
) -> List[str]:
    """Distinct description/name/vendor values used to look up entity memories."""
    keys: List[str] = []
    for row in [*data.source_a_rows[:rows_per_source], *data.source_b_rows[:rows_per_source]]:
        for field in fields:
            value = row.get(field)
            if value and str(value) not in keys:
                keys.append(str(value))
    return keys[:limit]


class TaskDataSource(Protocol):
    """Loads the persisted input of a task from the host's store."""

    async def load(
        self, organization_id: str, task_context_ref: Mapping[str, Any]
    ) -> Optional[ReconciliationInput]:
        """Return the task input, or ``None`` when no data has been uploaded."""


class InMemoryTaskDataSource:
    """Reconciliation inputs keyed by ``reconciliation_run_id``."""

    def __init__(self, runs: Optional[Dict[str, ReconciliationInput]] = None) -> None:
        self._runs: Dict[str, ReconciliationInput] = dict(runs or {})

    def add(self, reconciliation_run_id: str, data: ReconciliationInput) -> None:
        self._runs[reconciliation_run_id] = data

    async def load(
        self, organization_id: str, task_context_ref: Mapping[str, Any]
    ) -> Optional[ReconciliationInput]:
        run_id = task_context_ref.get("reconciliation_run_id")
        if run_id is None:
            return None
        return self._runs.get(str(run_id))


def register_reconciliation_tools(
    registry: ToolRegistry, data_source: TaskDataSource
) -> None:
    """Register the reconciliation tool set on ``registry``."""

    async def _load(tool_input: Dict[str, Any], context: ToolContext) -> ReconciliationInput:
        ref = dict(context.task_context_ref)
        if tool_input.get("reconciliation_run_id"):
            ref["reconciliation_run_id"] = tool_input["reconciliation_run_id"]
        data = await data_source.load(context.organization_id, ref)
        if data is None:
            raise LookupError("Run has no source data uploaded yet")
        return data

    @registry.tool(
        "run_deterministic_matching",
        "Run exact amount+date matching on all source rows. Returns number of "
        "matches found and baseline match rate.",
        {"reconciliation_run_id": "string"},
    )
    async def run_deterministic_matching(
        tool_input: Dict[str, Any], context: ToolContext
    ) -> ToolResult:
        data = await _load(tool_input, context)
        result = match_rows(
            data.model_copy(update={"rules": data.rules.model_copy(update={"fuzzy_description": False})})
        )
        total_a = len(data.source_a_rows)
        return ToolResult(
            success=True,
            data={
                "matched_count": len(result.matched),
                "total_source_a": total_a,
                "total_source_b": len(data.source_b_rows),
                "match_rate": match_rate(len(result.matched), total_a),
                "unmatched_a": len(result.unmatched_a),
                "unmatched_b": len(result.unmatched_b),
                "variance": result.variance,
            },
        )

    @registry.tool(
        "run_fuzzy_matching",
        "Match the rows exact matching left over by amount, nearby date and "
        "description similarity. Returns how many extra matches were found.",
        {"reconciliation_run_id": "string"},
    )
    async def run_fuzzy_matching(
        tool_input: Dict[str, Any], context: ToolContext
    ) -> ToolResult:
        data = await _load(tool_input, context)
        result = match_rows(
            data.model_copy(update={"rules": data.rules.model_copy(update={"fuzzy_description": True})})
        )
        total_a = len(data.source_a_rows)
        return ToolResult(
            success=True,
            data={
                "matched_count": len(result.matched),
                "fuzzy_matches": sum(1 for p in result.matched if p.method == "fuzzy"),
                "match_rate": match_rate(len(result.matched), total_a),
                "unmatched_a": len(result.unmatched_a),
                "unmatched_b": len(result.unmatched_b),
                "exceptions_classified": len(result.exceptions),
                "variance": result.variance,
            },
        )

    @registry.tool(
        "classify_exceptions",
        "Classify unmatched items into exception categories (bank_fee, "
        "timing_difference, missing_entry).",
        {"reconciliation_run_id": "string"},
    )
    async def classify_exceptions(
        tool_input: Dict[str, Any], context: ToolContext
    ) -> ToolResult:
        data = await _load(tool_input, context)
        result = match_rows(data)
        categories: Dict[str, int] = {}
        for exception in result.exceptions:
            categories[exception.category] = categories.get(exception.category, 0) + 1
        return ToolResult(
            success=True,
            data={
                "classified": len(result.exceptions),
                "categories": categories,
                "exceptions": [e.model_dump() for e in result.exceptions[:20]],
            },
        )

    @registry.tool(
        "recommend_resolution",
        "Recommend a resolution for a specific exception. Does not resolve it; "
        "a human must approve the recommendation.",
        {
            "exception_index": "number",
            "category": "string",
            "reason": "string",
            "confidence": "number",
        },
    )
    async def recommend_resolution(
        tool_input: Dict[str, Any], context: ToolContext
    ) -> ToolResult:
        recommendation = AgentRecommendation.model_validate(tool_input)
        return ToolResult(
            success=True, data={"recommendation": recommendation.model_dump()}
        )
