import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from tablecrm.settings import RUN_LOG_DIR

log = logging.getLogger("run_log")


def _file_for(kind: str, base_dir: Optional[str] = None) -> Optional[Path]:
    base = base_dir or RUN_LOG_DIR
    if not base:
        return None
    d = time.gmtime()
    p = Path(base).expanduser() / f"{kind}-{d.tm_year:04d}-{d.tm_mon:02d}-{d.tm_mday:02d}.jsonl"
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None
    return p


def record_run(kind: str, data: Dict[str, Any], *, base_dir: Optional[str] = None) -> Optional[Path]:
    """Append one batch-run summary as a JSON line; no-op unless RUN_LOG_DIR is set.

    Returns the file written to, if any. Failures are logged and swallowed so a
    full disk never fails a finished batch.
    """
    rec = {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "kind": kind,
        **data,
    }
    fp = _file_for(kind, base_dir)
    if fp is None:
        return None
    try:
        with fp.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")
    except OSError as e:
        log.warning("run summary not written to %s: %s", fp, e)
        return None
    return fp
