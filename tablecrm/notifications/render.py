from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List

from pydantic import BaseModel, ConfigDict, Field

_VAR_RE = re.compile(r"\{([^{}\s]+)\}")


class VariableMapping(BaseModel):
    """Binds a ``{variable}`` token in a template to a table column."""

    model_config = ConfigDict(populate_by_name=True)

    variable: str
    column_id: str = Field(alias="columnId")


def template_variables(text: str) -> List[str]:
    """Variable names used in a template, in first-seen order."""
    seen: List[str] = []
    for name in _VAR_RE.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def render_template(text: str, mappings: Iterable[VariableMapping], row_data: Dict[str, Any]) -> str:
    """Replace every mapped ``{variable}`` with the row's value; missing values render as ''.

    Tokens without a mapping are left as written.
    """
    out = text or ""
    for m in mappings:
        value = row_data.get(m.column_id)
        out = out.replace("{" + m.variable + "}", "" if value is None else str(value))
    return out
