from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tablecrm.models import ChatMode, ColumnDefinition, Row, Scope
from tablecrm.notifications.render import VariableMapping


class SelectionIn(BaseModel):
    selected_row_ids: List[str] = Field(default_factory=list)
    # "<rowId>:<columnId>"; context only, never widens the row scope
    selected_cell_ids: List[str] = Field(default_factory=list)


class CreateTableRequest(BaseModel):
    org_id: str = ""
    name: str
    description: str = ""
    columns: List[ColumnDefinition] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str
    mode: ChatMode = "chat"
    session_id: Optional[str] = None
    selection: SelectionIn = Field(default_factory=SelectionIn)
    org_context: Optional[str] = None


class ChatResponse(BaseModel):
    session_id: str
    reply: str
    intent: Optional[str] = None
    tool: Optional[str] = None
    pending_action: Optional[str] = None
    suggested_action: Optional[str] = None
    value: Optional[float] = None
    rows: List[Row] = Field(default_factory=list)
    batch: Optional[Dict[str, Any]] = None


class EnrichRequest(BaseModel):
    target_column_ids: List[str] = Field(default_factory=list)
    scope: Scope = "selected"
    selection: SelectionIn = Field(default_factory=SelectionIn)
    org_context: Optional[str] = None
    concurrency: Optional[int] = Field(default=None, ge=1, le=5)


class GenerateRequest(BaseModel):
    count: int
    prompt: Optional[str] = None
    target_column_ids: List[str] = Field(default_factory=list)
    org_context: Optional[str] = None


class TemplateIn(BaseModel):
    subject: str
    body: str
    id: Optional[str] = None
    name: Optional[str] = None


class BulkSendRequest(BaseModel):
    user_id: str
    table_id: str
    template: TemplateIn
    mappings: List[VariableMapping] = Field(default_factory=list)
    row_ids: Optional[List[str]] = None


class GmailConnectRequest(BaseModel):
    email: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class RunAccepted(BaseModel):
    run_id: str
    kind: str
    table_id: Optional[str] = None
    status: str = "running"
