# app/main.py
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.deps import (
    get_credentials,
    get_gateway,
    get_pipeline,
    get_registry,
    get_sessions,
    get_store,
)
from app.middleware_request_id import RequestIdMiddleware
from app.runs import RunRecord, RunRegistry, TableBusy
from app.runs_routes import router as runs_router
from app.sessions import SessionCache
from schemas.api import (
    BulkSendRequest,
    ChatRequest,
    ChatResponse,
    CreateTableRequest,
    EnrichRequest,
    GenerateRequest,
    GmailConnectRequest,
    RunAccepted,
)
from tablecrm.agent_session import ChatSession
from tablecrm.batch import enrich_rows, generate_rows
from tablecrm.company_key import find_company_key_column
from tablecrm.dispatcher import AggregateResult, TableResult, ViewResult
from tablecrm.enrichment import EnrichmentPipeline
from tablecrm.errors import ConfigurationError, ValidationError
from tablecrm.gateway import GenerativeGateway
from tablecrm.models import Selection, Table
from tablecrm.notifications.bulk_send import EmailTemplate, recipients_for_table, send_bulk_emails
from tablecrm.notifications.gmail import GmailCredential, GmailSender, InMemoryCredentialStore, _mask_email
from tablecrm.record_store import RecordStore
from tablecrm.settings import BATCH_CONCURRENCY, GENERATE_MAX_COUNT, OPENAI_API_KEY, POSTGRES_DSN

fmt = logging.Formatter("[%(levelname)s] %(asctime)s %(name)s :: %(message)s", "%H:%M:%S")

APP_ENV = (os.getenv("ENVIRONMENT") or os.getenv("PY_ENV") or "dev").strip().lower()


def _ensure_logger(name: str, level: str = "INFO"):
    lg = logging.getLogger(name)
    if not lg.handlers:
        h = logging.StreamHandler()
        h.setFormatter(fmt)
        lg.addHandler(h)
    lg.setLevel(level)
    return lg


# Configure app loggers so they are visible in Uvicorn output
logger = _ensure_logger("api")
for _name in ("batch", "enrichment", "intent", "gateway", "notifications", "runs", "event_bus"):
    _ensure_logger(_name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Shutdown cleanup: release pooled Postgres connections."""
    yield
    if POSTGRES_DSN:
        from tablecrm.database import close_pool

        close_pool()


app = FastAPI(title="tablecrm AI layer", lifespan=lifespan)

_origins = [o.strip() for o in (os.getenv("CORS_ALLOW_ORIGINS") or "http://localhost:3000").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)
app.include_router(runs_router)


@app.exception_handler(ConfigurationError)
async def _configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.warning("configuration error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def _validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(TableBusy)
async def _table_busy_handler(request: Request, exc: TableBusy):
    return JSONResponse(status_code=409, content={"detail": str(exc), "table_id": exc.table_id})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    """Log unhandled exceptions as one JSON line and hide details from the client."""
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        "level": "error",
        "service": "api",
        "environment": APP_ENV,
        "message": f"Unhandled exception on {request.method} {request.url.path}",
        "request_id": getattr(request.state, "request_id", None),
        "error": {"type": type(exc).__name__, "message": str(exc)},
    }
    logger.error(json.dumps(payload, ensure_ascii=False), exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "internal_error"})


def _load_table(store: RecordStore, table_id: str) -> Table:
    table = store.get_table(table_id)
    if table is None:
        raise HTTPException(status_code=404, detail="table not found")
    return table


def _accepted(rec: RunRecord) -> JSONResponse:
    body = RunAccepted(run_id=rec.id, kind=rec.kind, table_id=rec.table_id, status=rec.status)
    return JSONResponse(status_code=202, content=body.model_dump())


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "environment": APP_ENV,
        "gateway_configured": bool(OPENAI_API_KEY),
        "store": "postgres" if POSTGRES_DSN else "memory",
    }


@app.post("/tables", status_code=201)
async def create_table(body: CreateTableRequest, store: RecordStore = Depends(get_store)):
    table = store.create_table(body.org_id, body.name, body.description, body.columns)
    for data in body.rows:
        store.create_row(table.id, data)
    return _load_table(store, table.id).model_dump(mode="json")


@app.get("/tables/{table_id}")
async def get_table(table_id: str = Path(..., min_length=1), store: RecordStore = Depends(get_store)):
    return _load_table(store, table_id).model_dump(mode="json")


@app.post("/tables/{table_id}/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    table_id: str = Path(..., min_length=1),
    store: RecordStore = Depends(get_store),
    gateway: GenerativeGateway = Depends(get_gateway),
    pipeline: EnrichmentPipeline = Depends(get_pipeline),
    registry: RunRegistry = Depends(get_registry),
    sessions: SessionCache = Depends(get_sessions),
):
    """One chat turn. View state and pending agent actions live in the session."""
    table = _load_table(store, table_id)
    session_id = body.session_id or f"s-{uuid.uuid4().hex[:12]}"
    session = sessions.get((table_id, session_id))
    if session is None:
        session = ChatSession(gateway, table, pipeline=pipeline, store=store)
        sessions[(table_id, session_id)] = session
    session.table = table
    session.mode = body.mode
    if body.org_context is not None:
        session.org_context = body.org_context
    selection = Selection.of(body.selection.selected_row_ids, body.selection.selected_cell_ids)

    if session.pending is not None:
        # A confirmation may start a batch; it must not overlap a background run
        async with registry.hold(table_id):
            turn = await session.send(body.message, selection)
    else:
        turn = await session.send(body.message, selection)

    resp = ChatResponse(
        session_id=session_id,
        reply=turn.reply,
        rows=turn.rows,
        pending_action=turn.pending.summary if turn.pending else None,
    )
    if turn.analysis is not None:
        resp.intent = turn.analysis.intent
        resp.tool = turn.analysis.tool
        resp.suggested_action = turn.analysis.suggested_action
    result = turn.result
    if isinstance(result, ViewResult):
        resp.rows = result.rows
    elif isinstance(result, AggregateResult):
        resp.value = result.value
    elif isinstance(result, TableResult):
        resp.batch = result.outcome.summary()
    return resp


@app.post("/tables/{table_id}/enrich", status_code=202)
async def start_enrich(
    body: EnrichRequest,
    table_id: str = Path(..., min_length=1),
    store: RecordStore = Depends(get_store),
    pipeline: EnrichmentPipeline = Depends(get_pipeline),
    registry: RunRegistry = Depends(get_registry),
):
    table = _load_table(store, table_id)
    if find_company_key_column(table.columns) is None:
        raise ValidationError("table has no company key column")
    pipeline.ensure_ready()
    selection = Selection.of(body.selection.selected_row_ids, body.selection.selected_cell_ids)

    async def work(rec: RunRecord):
        outcome = await enrich_rows(
            pipeline,
            table,
            body.target_column_ids or None,
            scope=body.scope,
            selection=selection,
            org_context=body.org_context,
            store=store,
            on_progress=rec.on_progress,
            on_field_progress=rec.on_field_progress,
            cancel=rec.cancel,
            concurrency=body.concurrency or BATCH_CONCURRENCY,
        )
        return outcome.summary()

    return _accepted(registry.start("enrich", table_id, work))


@app.post("/tables/{table_id}/generate", status_code=202)
async def start_generate(
    body: GenerateRequest,
    table_id: str = Path(..., min_length=1),
    store: RecordStore = Depends(get_store),
    pipeline: EnrichmentPipeline = Depends(get_pipeline),
    registry: RunRegistry = Depends(get_registry),
):
    if body.count < 1 or body.count > GENERATE_MAX_COUNT:
        raise ValidationError(f"count must be between 1 and {GENERATE_MAX_COUNT}")
    table = _load_table(store, table_id)
    if find_company_key_column(table.columns) is None:
        raise ValidationError("table has no company key column")
    pipeline.ensure_ready()

    async def work(rec: RunRecord):
        outcome = await generate_rows(
            pipeline,
            table,
            body.count,
            prompt=body.prompt,
            target_column_ids=body.target_column_ids or None,
            org_context=body.org_context,
            store=store,
            on_progress=rec.on_progress,
            on_field_progress=rec.on_field_progress,
            cancel=rec.cancel,
        )
        return outcome.summary()

    return _accepted(registry.start("generate", table_id, work))


@app.post("/bulk-send", status_code=202)
async def start_bulk_send(
    body: BulkSendRequest,
    store: RecordStore = Depends(get_store),
    credentials: InMemoryCredentialStore = Depends(get_credentials),
    registry: RunRegistry = Depends(get_registry),
):
    table = _load_table(store, body.table_id)
    sender = GmailSender(credentials, body.user_id)
    # Missing credential fails the request before anything is sent
    sender.ensure_ready()
    recipients = recipients_for_table(table, body.row_ids)
    if not recipients:
        raise ValidationError("no rows with an email address")
    template = EmailTemplate(**body.template.model_dump())

    async def work(rec: RunRecord):
        result = await send_bulk_emails(
            template, recipients, body.mappings, sender, on_progress=rec.on_progress, cancel=rec.cancel
        )
        return result.model_dump()

    return _accepted(registry.start("bulk_send", body.table_id, work, exclusive=False))


@app.put("/gmail/{user_id}")
async def connect_gmail(
    body: GmailConnectRequest,
    user_id: str = Path(..., min_length=1),
    credentials: InMemoryCredentialStore = Depends(get_credentials),
):
    """Store a Gmail access token obtained by the client's OAuth flow."""
    credentials.put(
        GmailCredential(
            user_id=user_id,
            email=body.email,
            access_token=body.access_token,
            refresh_token=body.refresh_token,
            expires_at=body.expires_at,
        )
    )
    logger.info("gmail connected user=%s email=%s", user_id, _mask_email(body.email))
    return {"connected": True, "email": body.email}


@app.get("/gmail/{user_id}/status")
async def gmail_status(
    user_id: str = Path(..., min_length=1),
    credentials: InMemoryCredentialStore = Depends(get_credentials),
):
    cred: Optional[GmailCredential] = credentials.get(user_id)
    if cred is None:
        return {"connected": False, "email": None, "expired": False}
    return {"connected": True, "email": cred.email, "expired": cred.is_expired()}


@app.delete("/gmail/{user_id}")
async def disconnect_gmail(
    user_id: str = Path(..., min_length=1),
    credentials: InMemoryCredentialStore = Depends(get_credentials),
):
    return {"disconnected": credentials.delete(user_id)}
