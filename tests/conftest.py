import os
import sys


def _ensure_repo_on_path() -> None:
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if root not in sys.path:
        sys.path.append(root)


_ensure_repo_on_path()
os.environ.setdefault("OPENAI_API_KEY", "test")
os.environ.pop("RUN_LOG_DIR", None)

import pytest  # noqa: E402

from tablecrm.errors import ConfigurationError  # noqa: E402
from tablecrm.gateway import GatewayResponse, GenerateOptions  # noqa: E402
from tablecrm.models import ColumnDefinition, Table  # noqa: E402


class ScriptedGateway:
    """Stands in for GenerativeGateway; ``responder(prompt, opts)`` decides each reply.

    The responder may return text, a GatewayResponse, or an exception to raise.
    """

    def __init__(self, responder, search_configured=True):
        self.responder = responder
        self.search_configured = search_configured
        self.calls = []

    def require_search(self):
        if not self.search_configured:
            raise ConfigurationError("TAVILY_API_KEY is not set; web search is unavailable")

    async def generate(self, prompt, opts=None):
        opts = opts or GenerateOptions()
        self.calls.append((prompt, opts))
        out = self.responder(prompt, opts)
        if isinstance(out, BaseException):
            raise out
        if isinstance(out, GatewayResponse):
            return out
        return GatewayResponse(text=out or "")


@pytest.fixture
def scripted_gateway():
    return ScriptedGateway


@pytest.fixture
def company_table():
    cols = [
        ColumnDefinition(id="company_name", name="会社名", type="text", order=0),
        ColumnDefinition(id="industry", name="業種", type="text", order=1),
        ColumnDefinition(id="employees", name="従業員数", type="number", order=2),
        ColumnDefinition(id="status", name="ステータス", type="tag", order=3),
    ]
    rows = [
        {"id": "r1", "company_name": "Acme", "industry": "IT", "employees": "1,200", "status": "new"},
        {"id": "r2", "company_name": "Beta", "industry": "製造", "employees": "300", "status": "new"},
        {"id": "r3", "company_name": "Gamma", "industry": "IT", "employees": "", "status": "won"},
    ]
    return Table(id="t1", name="Leads", columns=cols, rows=rows)
