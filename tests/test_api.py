"""Tests for API endpoints."""

from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from labcal.auth.session import SESSION_COOKIE_NAME, create_session_token
from labcal.errors import AuthenticationRequired
from labcal.main import app
from labcal.models import ConnectionStatus

from helpers import create_user, drain_background_tasks, google_event, link_connection, page, token_record


@pytest_asyncio.fixture
async def client(services):
    """Client bound to the test services; the lifespan is not run."""
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def researcher_cookies():
    return {SESSION_COOKIE_NAME: create_session_token(1, "researcher@example.org")}


@pytest_asyncio.fixture
async def admin_cookies(test_db):
    await create_user(test_db, user_id=9, email="admin@example.org", is_admin=True)
    return {SESSION_COOKIE_NAME: create_session_token(9, "admin@example.org", is_admin=True)}


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
@pytest.mark.parametrize("method, path", [
    ("get", "/api/connections"),
    ("post", "/auth/calendar/start"),
    ("get", "/api/admin/credentials/verify"),
])
async def test_endpoints_require_session(client, method, path):
    response = await getattr(client, method)(path)
    assert response.status_code == 401


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_link_flow(client, services, researcher_cookies, fake_provider):
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]

    response = await client.post("/auth/calendar/start", cookies=researcher_cookies)
    assert response.status_code == 200
    state = response.json()["state"]

    response = await client.post(
        "/auth/calendar/callback", json={"code": "code-1", "state": state}, cookies=researcher_cookies,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "active"
    assert body["account_email"] == "researcher@example.org"

    await drain_background_tasks()
    assert len(await services.mirror.list_events(body["id"])) == 1
    assert len(await services.channels.list_for_connection(body["id"])) == 1


@pytest.mark.asyncio
async def test_callback_with_bad_state(client, researcher_cookies, fake_oauth):
    response = await client.post(
        "/auth/calendar/callback", json={"code": "code-1", "state": "forged"}, cookies=researcher_cookies,
    )

    assert response.status_code == 400
    assert fake_oauth.exchange_calls == []


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_connections(client, services, researcher_cookies):
    await link_connection(services)

    response = await client.get("/api/connections", cookies=researcher_cookies)

    assert response.status_code == 200
    connections = response.json()
    assert [c["id"] for c in connections] == ["google-c1"]
    assert connections[0]["needs_reconnect"] is False


@pytest.mark.asyncio
async def test_other_users_connection_is_not_found(client, services, test_db):
    await create_user(test_db, user_id=2, email="other@example.org")
    await link_connection(services)
    cookies = {SESSION_COOKIE_NAME: create_session_token(2, "other@example.org")}

    response = await client.get("/api/connections/google-c1", cookies=cookies)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_manual_sync_and_events(client, services, researcher_cookies, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1", summary="Journal club")], next_sync="T0")]

    response = await client.post("/api/connections/google-c1/sync", cookies=researcher_cookies)
    assert response.status_code == 202
    assert response.json()["status"] == "sync_started"
    await drain_background_tasks()

    response = await client.get("/api/connections/google-c1/events", cookies=researcher_cookies)
    events = response.json()
    assert [e["title"] for e in events] == ["Journal club"]
    assert events[0]["read_only"] is True

    response = await client.get("/api/connections/google-c1/sync-log", cookies=researcher_cookies)
    assert response.json()[0]["imported"] == 1


@pytest.mark.asyncio
async def test_manual_sync_of_errored_connection_is_rejected(client, services, researcher_cookies):
    await link_connection(services)
    await services.connections.set_status("google-c1", ConnectionStatus.ERROR, "reconnect")

    response = await client.post("/api/connections/google-c1/sync", cookies=researcher_cookies)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_remote_calendars_are_flagged_when_linked(client, services, researcher_cookies):
    await link_connection(services)

    response = await client.get("/api/connections/google-c1/calendars", cookies=researcher_cookies)

    assert response.status_code == 200
    assert [(c["id"], c["linked"]) for c in response.json()] == [
        ("researcher@example.org", True),
        ("lab-shared@group.calendar.google.com", False),
    ]


@pytest.mark.asyncio
async def test_set_linked_calendars_rejects_empty_list(client, services, researcher_cookies):
    await link_connection(services)

    response = await client.put(
        "/api/connections/google-c1/calendars", json={"calendar_ids": []}, cookies=researcher_cookies,
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_revoked_credentials_surface_as_reconnect(client, services, researcher_cookies, fake_oauth):
    await link_connection(services, record=token_record(expires_in=timedelta(seconds=-1)))
    fake_oauth.refresh_error = AuthenticationRequired("invalid_grant")

    response = await client.get("/api/connections/google-c1/calendars", cookies=researcher_cookies)

    assert response.status_code == 401
    assert response.json()["action"] == "reconnect"
    assert response.json()["connection_id"] == "google-c1"


@pytest.mark.asyncio
async def test_unlink(client, services, researcher_cookies, fake_oauth):
    await link_connection(services)

    response = await client.delete("/api/connections/google-c1", cookies=researcher_cookies)
    assert response.status_code == 200
    assert response.json()["status"] == "unlinked"

    response = await client.delete("/api/connections/google-c1", cookies=researcher_cookies)
    assert response.status_code == 200
    assert fake_oauth.revoked == ["refresh-1"]
    assert (await services.connections.get("google-c1")).status == ConnectionStatus.REVOKED


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_without_channel_id(client):
    response = await client.post("/api/webhooks/google-calendar")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_sync_handshake(client):
    response = await client.post(
        "/api/webhooks/google-calendar",
        headers={"X-Goog-Channel-ID": "channel-1", "X-Goog-Resource-State": "sync"},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_webhook_with_forged_token_is_acknowledged_but_ignored(client, services, fake_provider):
    await link_connection(services)
    channel = await services.channels.ensure_channel("google-c1", "primary")

    response = await client.post(
        "/api/webhooks/google-calendar",
        headers={
            "X-Goog-Channel-ID": channel.channel_id,
            "X-Goog-Channel-Token": "forged",
            "X-Goog-Resource-ID": channel.resource_id,
            "X-Goog-Resource-State": "exists",
        },
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "sync_triggered": False}
    assert fake_provider.calls == []


@pytest.mark.asyncio
async def test_webhook_triggers_sync(client, services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]
    channel = await services.channels.ensure_channel("google-c1", "primary")

    response = await client.post(
        "/api/webhooks/google-calendar",
        headers={
            "X-Goog-Channel-ID": channel.channel_id,
            "X-Goog-Channel-Token": channel.token,
            "X-Goog-Resource-ID": channel.resource_id,
            "X-Goog-Resource-State": "exists",
        },
    )
    await drain_background_tasks()

    assert response.json()["sync_triggered"] is True
    assert await services.mirror.exists("google-c1", "evt-1")


# ---------------------------------------------------------------------------
# Credential administration
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_admin_endpoints_refuse_non_admins(client, services, researcher_cookies):
    response = await client.post("/api/admin/credentials/migrate", cookies=researcher_cookies)
    assert response.status_code == 403

    entry = (await services.audit.list_entries(action="TOKEN_MIGRATION_FAILED"))[0]
    assert entry["actor"] == "user:1"
    assert entry["success"] is False


@pytest.mark.asyncio
async def test_cleanup_with_wrong_phrase(client, admin_cookies):
    response = await client.post(
        "/api/admin/credentials/cleanup", json={"confirmation": "delete"}, cookies=admin_cookies,
    )

    assert response.status_code == 400
    assert "DELETE_FIRESTORE_TOKENS" in response.json()["detail"]


@pytest.mark.asyncio
async def test_cleanup_refused_until_migrated(client, services, test_db, admin_cookies):
    await services.connections.create(
        "google-c1", user_id=1, provider="google", account_email=None,
        calendar_ids=["primary"], status=ConnectionStatus.ACTIVE,
    )

    response = await client.post(
        "/api/admin/credentials/cleanup",
        json={"confirmation": "DELETE_FIRESTORE_TOKENS"},
        cookies=admin_cookies,
    )

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_admin_migration_round(client, test_db, admin_cookies):
    await test_db.execute(
        """INSERT INTO legacy_calendar_tokens (connection_id, user_id, provider, access_token, refresh_token)
           VALUES ('google-c1', '1', 'google', 'legacy-access', 'legacy-refresh')"""
    )
    await test_db.commit()

    response = await client.post("/api/admin/credentials/migrate", cookies=admin_cookies)
    assert response.status_code == 200
    assert response.json()["migrated"] == 1

    response = await client.get("/api/admin/credentials/verify", cookies=admin_cookies)
    assert response.json()["all_migrated"] is True

    response = await client.get("/api/admin/credentials/audit", cookies=admin_cookies)
    assert response.json()["legacy_tokens"] == 1
