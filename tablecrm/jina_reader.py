import logging
import time
from typing import Optional
from urllib.parse import urlparse

import requests

log = logging.getLogger("jina_reader")

# host -> time of last failure; hosts are skipped for FAIL_TTL_S after a failure
_FAIL_CACHE: dict[str, float] = {}
FAIL_TTL_S = 60.0 * 30

_META_PREFIXES = (
    "title:",
    "url source:",
    "published time:",
    "markdown content:",
    "warning:",
)


def reader_url_for(raw_url: str) -> str:
    url = (raw_url or "").strip()
    parsed = urlparse(url if url.startswith("http") else ("https://" + url))
    scheme = (parsed.scheme or "https").lower()
    # r.jina mirrors the original scheme inside the path: /https://...
    inner = f"{scheme}://{parsed.netloc}{parsed.path or ''}"
    if parsed.query:
        inner += f"?{parsed.query}"
    return f"https://r.jina.ai/{inner}"


def clean_page_text(text: str) -> str:
    """Drop the metadata header lines r.jina prepends to every snapshot."""
    lines = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    kept = [ln for ln in lines if not ln.lower().startswith(_META_PREFIXES)]
    return "\n".join(kept)


def _host_of(url: str) -> str:
    p = urlparse(url if url.startswith("http") else ("https://" + url))
    return (p.netloc or "").lower()


def read_url(url: str, timeout: float = 12.0, char_limit: int = 12000) -> Optional[str]:
    """Fetch a page as plain text through the Jina reader.

    Returns None when the host recently failed or the fetch fails; callers
    treat that as "page unavailable", not as an error.
    """
    host = _host_of(url)
    now = time.time()
    if host and (now - _FAIL_CACHE.get(host, 0.0)) < FAIL_TTL_S:
        log.info("[jina] skip recently failed host=%s", host)
        return None
    reader = reader_url_for(url)
    try:
        log.info("[jina] GET %s", reader)
        r = requests.get(reader, timeout=timeout)
    except requests.RequestException as e:
        log.info("[jina] fetch failed url=%s err=%s", url, e)
        if host:
            _FAIL_CACHE[host] = now
        return None
    if r.status_code >= 400:
        log.info("[jina] status=%s for %s", r.status_code, url)
        if host:
            _FAIL_CACHE[host] = now
        return None
    return clean_page_text((r.text or "")[: char_limit * 2])[:char_limit]
