from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Annotated

ColumnType = Literal["text", "number", "tag", "url", "email", "date"]
TextOverflowMode = Literal["wrap", "clip", "visible"]
Scope = Literal["all", "selected"]
Intent = Literal["FILTER", "SORT", "EDIT", "CHAT"]
Confidence = Literal["high", "medium", "low"]
Phase = Literal["discovery", "extraction", "financial", "complete", "error"]
ChatMode = Literal["chat", "agent"]

# Row = {"id": str, <column_id>: scalar, ...}
Row = Dict[str, Any]

COMPANY_COLUMN_ID = "company_name"


class TagOption(BaseModel):
    id: str
    label: str
    color: Optional[str] = None


class ColumnDefinition(BaseModel):
    id: str
    name: str
    type: ColumnType = "text"
    order: int = 0
    description: Optional[str] = None
    required: bool = False
    text_overflow: Optional[TextOverflowMode] = None
    tag_options: List[TagOption] = Field(default_factory=list)

    @field_validator("tag_options")
    @classmethod
    def _unique_tag_labels(cls, options: List[TagOption]) -> List[TagOption]:
        seen: set[str] = set()
        for opt in options:
            key = opt.label.strip().lower()
            if key in seen:
                raise ValueError(f"duplicate tag label: {opt.label}")
            seen.add(key)
        return options


class Table(BaseModel):
    """A table value. Never mutated in place; every change returns a new Table."""

    model_config = ConfigDict(frozen=True)

    id: str
    org_id: str = ""
    name: str = ""
    description: str = ""
    columns: List[ColumnDefinition] = Field(default_factory=list)
    rows: List[Row] = Field(default_factory=list)

    def column(self, column_id: str) -> Optional[ColumnDefinition]:
        for col in self.columns:
            if col.id == column_id:
                return col
        return None

    def ordered_columns(self) -> List[ColumnDefinition]:
        return sorted(self.columns, key=lambda c: c.order)

    def row(self, row_id: str) -> Optional[Row]:
        for r in self.rows:
            if r.get("id") == row_id:
                return r
        return None

    def with_rows(self, rows: Iterable[Row]) -> "Table":
        return self.model_copy(update={"rows": list(rows)})

    def replace_row(self, row: Row) -> "Table":
        rows = [row if r.get("id") == row.get("id") else r for r in self.rows]
        return self.with_rows(rows)

    def append_rows(self, new_rows: Iterable[Row]) -> "Table":
        return self.with_rows([*self.rows, *new_rows])


def cell_value(row: Row, column_id: str) -> Any:
    v = row.get(column_id)
    return "" if v is None else v


def cell_text(row: Row, column_id: str) -> str:
    return str(cell_value(row, column_id))


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


# --- Tool parameters ---------------------------------------------------------


class _Params(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Filter(_Params):
    column_id: str = Field(alias="columnId")
    operator: Literal["contains", "equals", "greater", "less"] = "contains"
    value: str = ""
    scope: Scope = "all"

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return "" if v is None else str(v)


class SortState(_Params):
    column_id: str = Field(alias="columnId")
    direction: Literal["asc", "desc"] = "asc"
    scope: Scope = "all"


class AggregateParams(_Params):
    column_id: str = Field(alias="columnId")
    operation: Literal["max", "min", "mean"]
    scope: Scope = "all"


class EnrichParams(_Params):
    target_column_ids: List[str] = Field(alias="targetColumnIds", min_length=1)
    scope: Scope = "selected"


class GenerateParams(_Params):
    count: int = Field(ge=1)
    target_column_ids: List[str] = Field(default_factory=list, alias="targetColumnIds")
    prompt: Optional[str] = None
    scope: Scope = "all"


class NoToolCall(BaseModel):
    tool: Literal["none"] = "none"


class FilterCall(BaseModel):
    tool: Literal["filter"] = "filter"
    params: Filter


class SortCall(BaseModel):
    tool: Literal["sort"] = "sort"
    params: SortState


class AggregateCall(BaseModel):
    tool: Literal["calculate_max", "calculate_min", "calculate_mean"]
    params: AggregateParams

    @model_validator(mode="after")
    def _operation_matches_tool(self) -> "AggregateCall":
        expected = self.tool.split("_", 1)[1]
        if self.params.operation != expected:
            self.params = self.params.model_copy(update={"operation": expected})
        return self


class EnrichCall(BaseModel):
    tool: Literal["enrich"] = "enrich"
    params: EnrichParams


class GenerateCall(BaseModel):
    tool: Literal["generate_data"] = "generate_data"
    params: GenerateParams


ToolCall = Annotated[
    Union[NoToolCall, FilterCall, SortCall, AggregateCall, EnrichCall, GenerateCall],
    Field(discriminator="tool"),
]

MUTATION_TOOLS = frozenset({"enrich", "generate_data"})
AGGREGATE_TOOLS = frozenset({"calculate_max", "calculate_min", "calculate_mean"})


class AnalyzeChatResult(BaseModel):
    intent: Intent = "CHAT"
    reply: str = ""
    call: ToolCall = Field(default_factory=NoToolCall)
    suggested_action: Optional[str] = None

    @property
    def tool(self) -> str:
        return self.call.tool

    @property
    def is_mutation(self) -> bool:
        return self.call.tool in MUTATION_TOOLS


# --- Enrichment / batch ------------------------------------------------------


class EnrichmentResult(BaseModel):
    field: str
    value: Union[str, int, float]
    confidence: Confidence
    source: Optional[str] = None


class EnrichmentProgress(BaseModel):
    row_id: str
    column_id: str
    phase: Phase
    result: Optional[EnrichmentResult] = None
    error: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.row_id}-{self.column_id}"


class BatchProgress(BaseModel):
    total: int
    completed: int
    successful: int
    failed: int
    current_item: Optional[str] = None


class BulkSendResult(BaseModel):
    successful: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


@dataclass(frozen=True)
class Selection:
    selected_row_ids: FrozenSet[str] = field(default_factory=frozenset)
    selected_cell_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, row_ids: Iterable[str] = (), cell_ids: Iterable[str] = ()) -> "Selection":
        return cls(frozenset(row_ids or ()), frozenset(cell_ids or ()))
