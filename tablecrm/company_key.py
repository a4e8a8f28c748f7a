import logging
from typing import Iterable, Optional

from tablecrm.models import COMPANY_COLUMN_ID, ColumnDefinition

log = logging.getLogger("company_key")

# Display-name fragments that mark the column identifying the company
COMPANY_KEY_KEYWORDS = (
    "会社",
    "企業",
    "社名",
    "company",
    "name",
    "domain",
    "ドメイン",
    "website",
    "サイト",
    "url",
)


def find_company_key_column(columns: Iterable[ColumnDefinition]) -> Optional[ColumnDefinition]:
    """Pick the join-key column for external lookups.

    The reserved ``company_name`` id wins outright. Otherwise the first column
    in display order whose name contains one of the keywords (case-insensitive).
    Returns None when nothing matches.
    """
    ordered = sorted(columns, key=lambda c: c.order)
    for col in ordered:
        if col.id == COMPANY_COLUMN_ID:
            return col
    for col in ordered:
        name = (col.name or "").lower()
        if any(k in name for k in COMPANY_KEY_KEYWORDS):
            return col
    log.info("no company key column among %s", [c.name for c in ordered])
    return None
