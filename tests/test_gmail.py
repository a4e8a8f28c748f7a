import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from tablecrm.errors import ConfigurationError
from tablecrm.notifications.gmail import (
    TOKEN_EXPIRED,
    GmailCredential,
    GmailSender,
    InMemoryCredentialStore,
    _mask_email,
    build_raw_message,
)


def _store(**kw):
    store = InMemoryCredentialStore()
    store.put(GmailCredential(user_id="u1", email="sales@acme.co.jp", access_token="tok", **kw))
    return store


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_mask_email():
    assert _mask_email("taro@example.com") == "ta***@e***.com"
    assert _mask_email("") == ""


def test_raw_message_is_urlsafe_without_padding():
    raw = build_raw_message("a@x.jp", "b@y.jp", "件名", "本文です")
    assert "=" not in raw
    decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)).decode("utf-8")
    assert "To: b@y.jp" in decoded


def test_not_connected_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        GmailSender(InMemoryCredentialStore(), "nobody").ensure_ready()


@pytest.mark.asyncio
async def test_send_posts_raw_message_with_bearer_token():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "m-1"})

    async with _client(handler) as client:
        sender = GmailSender(_store(), "u1", client=client, send_url="https://gmail.test/send")
        out = await sender.send("to@example.com", "Hi", "Body")
    assert out.ok and out.message_id == "m-1"
    assert seen["auth"] == "Bearer tok"
    assert "raw" in seen["body"]


@pytest.mark.asyncio
async def test_api_errors_are_reported_per_recipient():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "Invalid To header"}})

    async with _client(handler) as client:
        out = await GmailSender(_store(), "u1", client=client).send("bad", "s", "b")
    assert not out.ok
    assert out.error == "Invalid To header"


@pytest.mark.asyncio
async def test_expired_token_is_a_failure_not_an_exception():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401)

    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    async with _client(handler) as client:
        expired = await GmailSender(_store(expires_at=past), "u1", client=client).send("x@y.jp", "s", "b")
        rejected = await GmailSender(_store(), "u1", client=client).send("x@y.jp", "s", "b")
    assert expired.error == TOKEN_EXPIRED
    assert rejected.error == TOKEN_EXPIRED
    assert len(calls) == 1
