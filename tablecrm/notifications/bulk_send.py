"""
Bulk email send over table rows.

Recipients go out one at a time with a fixed pause between sends. One failed
recipient never stops the batch; failures are tallied as "<email>: <reason>".
A missing mail credential is the only fatal case and is raised before anything
is sent.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from tablecrm.enrichment import notify
from tablecrm.models import BatchProgress, BulkSendResult, ColumnDefinition, Row, Table, is_blank
from tablecrm.notifications.gmail import SendOutcome
from tablecrm.notifications.render import VariableMapping, render_template
from tablecrm.run_log import record_run
from tablecrm.settings import BULK_SEND_DELAY_MS

log = logging.getLogger("notifications")


class MailSender(Protocol):
    def ensure_ready(self) -> Any: ...

    async def send(self, to: str, subject: str, body: str) -> SendOutcome: ...


@dataclass
class EmailTemplate:
    subject: str
    body: str
    id: Optional[str] = None
    name: Optional[str] = None


@dataclass
class Recipient:
    email: str
    row_data: Dict[str, Any] = field(default_factory=dict)


def find_email_column(columns: Iterable[ColumnDefinition]) -> Optional[ColumnDefinition]:
    cols = sorted(columns, key=lambda c: c.order)
    for c in cols:
        if c.type == "email":
            return c
    for c in cols:
        name = (c.name or "").lower()
        if "email" in name or "mail" in name or "メール" in name:
            return c
    return None


def recipients_from_rows(rows: Sequence[Row], email_column_id: str) -> List[Recipient]:
    """One recipient per row with a non-blank address; rows without one are dropped."""
    out = []
    for r in rows:
        addr = r.get(email_column_id)
        if is_blank(addr):
            continue
        out.append(Recipient(email=str(addr).strip(), row_data=dict(r)))
    return out


def recipients_for_table(table: Table, row_ids: Optional[Iterable[str]] = None) -> List[Recipient]:
    col = find_email_column(table.columns)
    if col is None:
        return []
    wanted = set(row_ids) if row_ids else None
    rows = [r for r in table.rows if wanted is None or r.get("id") in wanted]
    return recipients_from_rows(rows, col.id)


async def send_bulk_emails(
    template: EmailTemplate,
    recipients: Sequence[Recipient],
    mappings: Sequence[VariableMapping],
    sender: MailSender,
    *,
    on_progress: Optional[Callable[[BatchProgress], Any]] = None,
    cancel: Optional[Callable[[], bool]] = None,
    delay_ms: int = BULK_SEND_DELAY_MS,
) -> BulkSendResult:
    # Raises ConfigurationError when no credential is stored
    sender.ensure_ready()
    result = BulkSendResult()
    total = len(recipients)
    completed = 0
    pause = max(200, delay_ms) / 1000.0

    for i, recipient in enumerate(recipients):
        if cancel is not None and cancel():
            log.info("bulk send cancelled after %s/%s", completed, total)
            break
        await notify(
            on_progress,
            BatchProgress(
                total=total,
                completed=i,
                successful=result.successful,
                failed=result.failed,
                current_item=recipient.email,
            ),
        )
        subject = render_template(template.subject, mappings, recipient.row_data)
        body = render_template(template.body, mappings, recipient.row_data)
        try:
            outcome = await sender.send(recipient.email, subject, body)
        except Exception as e:
            log.warning("send raised for recipient %s: %s", i, e)
            outcome = SendOutcome(False, str(e) or type(e).__name__)
        if outcome.ok:
            result.successful += 1
        else:
            result.failed += 1
            result.errors.append(f"{recipient.email}: {outcome.error or 'Failed to send email'}")
        completed = i + 1
        if i < total - 1:
            await asyncio.sleep(pause)

    await notify(
        on_progress,
        BatchProgress(total=total, completed=completed, successful=result.successful, failed=result.failed),
    )
    record_run(
        "bulk_send",
        {
            "template_id": template.id,
            "total": total,
            "completed": completed,
            "successful": result.successful,
            "failed": result.failed,
            "errors": result.errors,
        },
    )
    return result
