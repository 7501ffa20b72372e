import hashlib
import hmac
import json
import uuid
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.models.messaging_session import MessagingSession
from chatrelay.models.webhook_log import DIRECTION_INCOMING, WebhookLog
from chatrelay.services.webhook_service import (
    WebhookRelay,
    generate_secret,
    secrets_match,
)


async def webhook_logs(session_factory, user_id):
    async with session_factory() as db:
        result = await db.execute(
            select(WebhookLog).where(WebhookLog.user_id == user_id).order_by(WebhookLog.created_at)
        )
        return list(result.scalars().all())


# ── Webhook config endpoint tests ───────────────────────────────────


@pytest.mark.asyncio
async def test_get_config_without_row(client, test_user):
    response = await client.get("/webhook/config")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["webhook_url"] is None
    assert data["webhook_enabled"] is False
    assert data["has_secret"] is False
    assert data["outgoing_webhook_url"] == f"http://test/webhook/send/{test_user.id}"


@pytest.mark.asyncio
async def test_set_config_returns_secret_once(client):
    response = await client.post("/webhook/config", json={
        "webhook_url": "https://example.com/hook",
        "webhook_enabled": True,
    })
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert len(data["webhook_secret"]) == 64  # 32 bytes hex
    assert "not be shown again" in data["note"]

    read = (await client.get("/webhook/config")).json()
    assert read["webhook_url"] == "https://example.com/hook"
    assert read["webhook_enabled"] is True
    assert read["has_secret"] is True
    assert data["webhook_secret"] not in json.dumps(read)


@pytest.mark.asyncio
async def test_set_config_rotates_secret(client, session_factory, test_user):
    body = {"webhook_url": "https://example.com/hook", "webhook_enabled": True}
    first = (await client.post("/webhook/config", json=body)).json()["webhook_secret"]
    second = (await client.post("/webhook/config", json=body)).json()["webhook_secret"]
    assert first != second

    async with session_factory() as db:
        rows = (await db.execute(
            select(MessagingSession).where(MessagingSession.user_id == test_user.id)
        )).scalars().all()
    assert len(rows) == 1
    assert rows[0].webhook_secret == second


@pytest.mark.asyncio
async def test_set_config_invalid_url(client):
    response = await client.post("/webhook/config", json={
        "webhook_url": "not a url",
        "webhook_enabled": True,
    })
    assert response.status_code == 400
    data = response.json()
    assert data["error"] == "Validation failed"
    assert data["details"][0]["field"] == "webhook_url"


@pytest.mark.asyncio
async def test_set_config_empty_url_clears(client):
    response = await client.post("/webhook/config", json={
        "webhook_url": "",
        "webhook_enabled": False,
    })
    assert response.status_code == 200
    read = (await client.get("/webhook/config")).json()
    assert read["webhook_url"] is None
    assert read["webhook_enabled"] is False


@pytest.mark.asyncio
async def test_test_webhook_without_config(client, webhook_http):
    response = await client.post("/webhook/test")
    assert response.status_code == 200
    assert response.json() == {"success": False, "message": "No active webhook configured"}
    webhook_http.post.assert_not_called()


@pytest.mark.asyncio
async def test_test_webhook_disabled(client, webhook_http):
    await client.post("/webhook/config", json={
        "webhook_url": "https://example.com/hook",
        "webhook_enabled": False,
    })
    response = await client.post("/webhook/test")
    assert response.json()["success"] is False
    webhook_http.post.assert_not_called()


@pytest.mark.asyncio
async def test_test_webhook_delivers(client, webhook_http, session_factory, test_user):
    secret = (await client.post("/webhook/config", json={
        "webhook_url": "https://example.com/hook",
        "webhook_enabled": True,
    })).json()["webhook_secret"]

    response = await client.post("/webhook/test")
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Test webhook sent"}

    webhook_http.post.assert_called_once()
    call_args = webhook_http.post.call_args
    assert call_args.args[0] == "https://example.com/hook"
    body = call_args.kwargs["content"]
    assert json.loads(body)["event"] == "test"
    headers = call_args.kwargs["headers"]
    assert headers["X-Relay-Event"] == "test"
    expected_sig = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    assert headers["X-Relay-Signature"] == f"sha256={expected_sig}"

    logs = await webhook_logs(session_factory, test_user.id)
    assert len(logs) == 1
    assert logs[0].status == "200"


@pytest.mark.asyncio
async def test_test_webhook_receiver_error(client, webhook_http):
    webhook_http.post = AsyncMock(return_value=httpx.Response(500, text="boom"))
    await client.post("/webhook/config", json={
        "webhook_url": "https://example.com/hook",
        "webhook_enabled": True,
    })
    response = await client.post("/webhook/test")
    assert response.json() == {"success": False, "message": "Test webhook delivery failed"}


# ── WebhookRelay delivery tests ─────────────────────────────────────


@pytest.fixture
async def configured_user(relay: WebhookRelay, db_session: AsyncSession):
    user_id = uuid.uuid4()
    secret = await relay.configure(db_session, user_id, "https://example.com/hook", True)
    await db_session.commit()
    return user_id, secret


@pytest.mark.asyncio
async def test_deliver_success(relay, webhook_http, session_factory, configured_user):
    """One POST with the exact JSON body, one log row."""
    user_id, _ = configured_user
    payload = {"event": "message_received", "data": {"body": "hi", "n": 1}}

    assert await relay.deliver(user_id, payload) is True

    webhook_http.post.assert_called_once()
    call_args = webhook_http.post.call_args
    assert json.loads(call_args.kwargs["content"]) == payload
    assert call_args.kwargs["headers"]["Content-Type"] == "application/json"
    assert call_args.kwargs["timeout"] == 5.0

    logs = await webhook_logs(session_factory, user_id)
    assert len(logs) == 1
    assert logs[0].direction == DIRECTION_INCOMING
    assert logs[0].status == "200"
    assert logs[0].payload == payload
    assert logs[0].response == {"status": 200}


@pytest.mark.asyncio
async def test_deliver_non_2xx_is_not_retried(relay, webhook_http, session_factory, configured_user):
    user_id, _ = configured_user
    webhook_http.post = AsyncMock(return_value=httpx.Response(503, text="down"))

    assert await relay.deliver(user_id, {"event": "message_received"}) is False

    assert webhook_http.post.call_count == 1
    logs = await webhook_logs(session_factory, user_id)
    assert [log.status for log in logs] == ["503"]


@pytest.mark.asyncio
async def test_deliver_network_error(relay, webhook_http, session_factory, configured_user):
    user_id, _ = configured_user
    webhook_http.post = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))

    assert await relay.deliver(user_id, {"event": "message_received"}) is False

    assert webhook_http.post.call_count == 1
    logs = await webhook_logs(session_factory, user_id)
    assert len(logs) == 1
    assert logs[0].status == "failed"
    assert "Connection refused" in logs[0].response["error"]


@pytest.mark.asyncio
async def test_deliver_without_config(relay, webhook_http, session_factory):
    user_id = uuid.uuid4()
    assert await relay.deliver(user_id, {"event": "message_received"}) is False
    webhook_http.post.assert_not_called()
    assert await webhook_logs(session_factory, user_id) == []


@pytest.mark.asyncio
async def test_deliver_after_disable(relay, webhook_http, db_session, configured_user):
    user_id, _ = configured_user
    await relay.configure(db_session, user_id, "https://example.com/hook", False)
    await db_session.commit()

    assert await relay.deliver(user_id, {"event": "message_received"}) is False
    webhook_http.post.assert_not_called()


@pytest.mark.asyncio
async def test_deliver_uses_latest_secret(relay, webhook_http, db_session, configured_user):
    user_id, old_secret = configured_user
    new_secret = await relay.configure(db_session, user_id, "https://example.com/other", True)
    await db_session.commit()

    await relay.deliver(user_id, {"event": "message_received"})

    call_args = webhook_http.post.call_args
    assert call_args.args[0] == "https://example.com/other"
    body = call_args.kwargs["content"].encode("utf-8")
    expected = hmac.new(new_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    assert call_args.kwargs["headers"]["X-Relay-Signature"] == f"sha256={expected}"
    assert new_secret != old_secret


@pytest.mark.asyncio
async def test_target_loaded_from_database(session_factory, webhook_http, configured_user):
    """A fresh relay picks up configuration saved by another instance."""
    user_id, _ = configured_user
    fresh = WebhookRelay(session_factory, http_client=webhook_http, timeout=5.0)

    target = await fresh.target_for(user_id)
    assert target is not None
    assert target.url == "https://example.com/hook"


@pytest.mark.asyncio
async def test_dispatch_does_not_block(relay, webhook_http, session_factory, configured_user):
    user_id, _ = configured_user
    task = relay.dispatch(user_id, {"event": "message_received"})
    await relay.drain(timeout=1.0)

    assert task.done()
    assert task.result() is True
    assert len(await webhook_logs(session_factory, user_id)) == 1


@pytest.mark.asyncio
async def test_log_failure_does_not_break_delivery(webhook_http):
    def broken_session_factory():
        raise RuntimeError("database down")

    broken = WebhookRelay(broken_session_factory, http_client=webhook_http, timeout=5.0)
    assert await broken.deliver(uuid.uuid4(), {"event": "test"}) is False


def test_generate_secret_is_unique_hex():
    secrets = {generate_secret() for _ in range(20)}
    assert len(secrets) == 20
    assert all(len(s) == 64 and int(s, 16) >= 0 for s in secrets)


def test_secrets_match():
    assert secrets_match("abc", "abc")
    assert not secrets_match("abc", "abd")
    assert not secrets_match("abc", None)
    assert not secrets_match("", "")
