import base64
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, Optional, Protocol

import httpx

from tablecrm.errors import ConfigurationError
from tablecrm.settings import GMAIL_SEND_URL, GMAIL_TIMEOUT_S

log = logging.getLogger("notifications")

TOKEN_EXPIRED = "Gmail token expired. Please reconnect."


def _mask_email(e: Optional[str]) -> str:
    if not e:
        return ""
    local, _, domain = e.partition("@")
    local_mask = (local[:2] + "***") if local else "***"
    dom_parts = domain.split(".") if domain else []
    if len(dom_parts) >= 2:
        dom_mask = dom_parts[0][:1] + "***." + dom_parts[-1]
    else:
        dom_mask = "***"
    return f"{local_mask}@{dom_mask}"


@dataclass
class GmailCredential:
    user_id: str
    email: str
    access_token: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        exp = self.expires_at if self.expires_at.tzinfo else self.expires_at.replace(tzinfo=timezone.utc)
        return exp <= now


class CredentialStore(Protocol):
    def get(self, user_id: str) -> Optional[GmailCredential]: ...


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._creds: Dict[str, GmailCredential] = {}

    def put(self, cred: GmailCredential) -> None:
        with self._lock:
            self._creds[cred.user_id] = cred

    def get(self, user_id: str) -> Optional[GmailCredential]:
        with self._lock:
            return self._creds.get(user_id)

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._creds.pop(user_id, None) is not None


@dataclass
class SendOutcome:
    ok: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


def build_raw_message(sender: str, to: str, subject: str, body: str) -> str:
    """RFC 2822 message, base64url encoded without padding, as the Gmail API expects."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body, charset="utf-8")
    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")


def _api_error(resp: httpx.Response) -> str:
    try:
        data: Any = resp.json()
        msg = ((data or {}).get("error") or {}).get("message")
        if msg:
            return str(msg)
    except ValueError:
        pass
    return (resp.text or "").strip()[:300] or f"Failed to send email (HTTP {resp.status_code})"


class GmailSender:
    """Sends one plain-text message per call with a user's stored Gmail credential."""

    def __init__(
        self,
        credentials: CredentialStore,
        user_id: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        send_url: str = GMAIL_SEND_URL,
        timeout: float = GMAIL_TIMEOUT_S,
    ):
        self.credentials = credentials
        self.user_id = user_id
        self._client = client
        self.send_url = send_url
        self.timeout = timeout

    def ensure_ready(self) -> GmailCredential:
        cred = self.credentials.get(self.user_id)
        if cred is None or not (cred.access_token or "").strip():
            raise ConfigurationError("Gmail not connected")
        return cred

    async def _post(self, payload: Dict[str, Any], token: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        if self._client is not None:
            return await self._client.post(self.send_url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.send_url, json=payload, headers=headers)

    async def send(self, to: str, subject: str, body: str) -> SendOutcome:
        cred = self.ensure_ready()
        if cred.is_expired():
            log.warning("gmail token expired user=%s", self.user_id)
            return SendOutcome(False, TOKEN_EXPIRED)
        raw = build_raw_message(cred.email, to, subject, body)
        try:
            resp = await self._post({"raw": raw}, cred.access_token)
        except httpx.HTTPError as e:
            log.warning("email exception to=%s err=%s", _mask_email(to), e)
            return SendOutcome(False, str(e) or type(e).__name__)
        if resp.status_code == 401:
            return SendOutcome(False, TOKEN_EXPIRED)
        if not (200 <= resp.status_code < 300):
            err = _api_error(resp)
            log.warning("email failed to=%s http_status=%s error=%s", _mask_email(to), resp.status_code, err)
            return SendOutcome(False, err)
        message_id = None
        try:
            message_id = (resp.json() or {}).get("id")
        except ValueError:
            pass
        log.info("email sent to=%s id=%s", _mask_email(to), message_id)
        return SendOutcome(True, message_id=message_id)
