#!/usr/bin/env python3
"""
Enrich or extend a table stored as a JSON file, without the API.

The file holds one table: {"id", "name", "columns": [...], "rows": [...]}.
Enriched (or generated) rows are written back to --out, or printed.

Examples:
  python scripts/enrich_table.py --file table.json --columns industry,employees
  python scripts/enrich_table.py --file table.json --rows r1,r2 --org-context "We sell CRM to SMBs"
  python scripts/enrich_table.py --file table.json --generate 5 --prompt "東京のSaaS企業" --out out.json

Needs OPENAI_API_KEY (and TAVILY_API_KEY for web search) in the env or .env.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure repository root is on sys.path so `tablecrm.*` can be imported
_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from tablecrm.batch import CancelToken, enrich_rows, generate_rows  # noqa: E402
from tablecrm.enrichment import EnrichmentPipeline  # noqa: E402
from tablecrm.errors import ConfigurationError, ValidationError  # noqa: E402
from tablecrm.gateway import GenerativeGateway  # noqa: E402
from tablecrm.models import BatchProgress, Selection, Table  # noqa: E402
from tablecrm.settings import load_gateway_config  # noqa: E402

log = logging.getLogger("enrich_table")


def _split(raw):
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


def _print_progress(p: BatchProgress) -> None:
    current = f" ({p.current_item})" if p.current_item else ""
    print(f"[{p.completed}/{p.total}] ok={p.successful} failed={p.failed}{current}", file=sys.stderr)


async def _run(args) -> int:
    table = Table.model_validate(json.loads(Path(args.file).read_text(encoding="utf-8")))
    pipeline = EnrichmentPipeline(GenerativeGateway(load_gateway_config()))
    cancel = CancelToken()
    columns = _split(args.columns) or None
    try:
        if args.generate:
            outcome = await generate_rows(
                pipeline, table, args.generate,
                prompt=args.prompt, target_column_ids=columns, org_context=args.org_context,
                on_progress=_print_progress, cancel=cancel, concurrency=args.concurrency,
            )
        else:
            rows = _split(args.rows)
            outcome = await enrich_rows(
                pipeline, table, columns,
                scope="selected" if rows else "all",
                selection=Selection.of(rows),
                org_context=args.org_context,
                on_progress=_print_progress, cancel=cancel, concurrency=args.concurrency,
            )
    except asyncio.CancelledError:
        cancel.cancel()
        raise

    summary = outcome.summary()
    print(json.dumps(summary, ensure_ascii=False, indent=2), file=sys.stderr)
    data = outcome.table.model_dump(mode="json")
    if args.out:
        Path(args.out).write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        log.info("wrote %s rows to %s", len(outcome.table.rows), args.out)
    else:
        print(json.dumps(data, ensure_ascii=False, indent=2))
    return 1 if outcome.refused else 0


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(asctime)s %(name)s :: %(message)s")
    ap = argparse.ArgumentParser(description="Enrich a JSON table file")
    ap.add_argument("--file", required=True, help="Path to the table JSON")
    ap.add_argument("--columns", help="Comma-separated target column ids (default: all eligible)")
    ap.add_argument("--rows", help="Comma-separated row ids (default: all rows)")
    ap.add_argument("--generate", type=int, default=0, help="Generate N new company rows instead")
    ap.add_argument("--prompt", help="Description of companies to generate")
    ap.add_argument("--org-context", help="Your organization's profile, enables fit scoring")
    ap.add_argument("--concurrency", type=int, default=1, help="Row workers (1-5)")
    ap.add_argument("--out", help="Write the resulting table here instead of stdout")
    args = ap.parse_args()
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130
    except (ConfigurationError, ValidationError) as e:
        logging.getLogger("enrich_table").error("%s", e)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
