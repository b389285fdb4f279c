"""Tests for the sync engine."""

import asyncio

import httplib2
import pytest
from googleapiclient.errors import HttpError

from labcal.config import Settings
from labcal.errors import (
    AuthenticationRequired,
    ProviderRequestRejected,
    SyncTokenInvalid,
    TransientProviderError,
)
from labcal.models import ConnectionStatus, SyncStatus
from labcal.sync.engine import SyncEngine
from labcal.sync.google_calendar import _raise_for_http_error

from helpers import drain_background_tasks, google_event, link_connection, page


async def _mirror_ids(services, connection_id="google-c1"):
    return [e.external_id for e in await services.mirror.list_events(connection_id)]


@pytest.mark.asyncio
async def test_initial_sync_mirrors_window_and_stores_token(services, fake_provider, settings):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [
        page([google_event("evt-1", day=20)], next_page="1"),
        page([google_event("evt-2", day=21)], next_sync="T0"),
    ]

    result = await services.sync_engine.trigger_sync("google-c1")

    assert result.status == "success"
    assert result.imported == 2
    assert await _mirror_ids(services) == ["evt-1", "evt-2"]

    state = await services.sync_states.get("google-c1", "primary")
    assert state.sync_token == "T0"
    span = state.window_end - state.window_start
    assert span.days == settings.sync_window_past_days + settings.sync_window_future_days

    first_call = fake_provider.calls[0]
    assert first_call["sync_token"] is None
    assert first_call["time_min"] is not None and first_call["time_max"] is not None

    connection = await services.connections.get("google-c1")
    assert connection.last_synced_at is not None
    assert not connection.is_degraded


@pytest.mark.asyncio
async def test_incremental_sync_upserts_and_deletes(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [
        page([google_event("evt-1"), google_event("evt-2")], next_sync="T0"),
    ]
    fake_provider.incremental["T0"] = [
        page([google_event("evt-1", summary="Moved meeting"), google_event("evt-3")], deleted=["evt-2"], next_sync="T1"),
    ]

    await services.sync_engine.trigger_sync("google-c1")
    result = await services.sync_engine.trigger_sync("google-c1")

    assert (result.imported, result.updated, result.deleted) == (1, 1, 1)
    assert await _mirror_ids(services) == ["evt-1", "evt-3"]
    assert (await services.mirror.get("google-c1", "evt-1")).title == "Moved meeting"
    assert (await services.sync_states.get("google-c1", "primary")).sync_token == "T1"
    assert fake_provider.calls[-1]["sync_token"] == "T0"


@pytest.mark.asyncio
async def test_replaying_a_page_sequence_converges(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1"), google_event("evt-2")], next_sync="T0")]
    changes = [page([google_event("evt-1", summary="Renamed")], deleted=["evt-2"], next_sync="T0")]
    fake_provider.incremental["T0"] = changes

    await services.sync_engine.trigger_sync("google-c1")
    await services.sync_engine.trigger_sync("google-c1")
    after_first = [e.model_dump(exclude={"last_synced_at"}) for e in await services.mirror.list_events("google-c1")]

    await services.sync_engine.trigger_sync("google-c1")
    after_second = [e.model_dump(exclude={"last_synced_at"}) for e in await services.mirror.list_events("google-c1")]

    assert after_first == after_second
    assert [e["external_id"] for e in after_second] == ["evt-1"]


@pytest.mark.asyncio
async def test_invalid_sync_token_triggers_full_resync(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]
    await services.sync_engine.trigger_sync("google-c1")

    fake_provider.incremental["T0"] = SyncTokenInvalid("410 Gone")
    fake_provider.full_pages["primary"] = [page([google_event("evt-1"), google_event("evt-9")], next_sync="T1")]

    result = await services.sync_engine.trigger_sync("google-c1")

    assert result.status == "success"
    assert result.full_resyncs == 1
    state = await services.sync_states.get("google-c1", "primary")
    assert state.sync_token == "T1"
    # The rejected token is used exactly once
    assert [c["sync_token"] for c in fake_provider.calls] == [None, "T0", None]
    assert await _mirror_ids(services) == ["evt-1", "evt-9"]


@pytest.mark.asyncio
async def test_full_resync_drops_events_deleted_while_token_was_stale(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1"), google_event("evt-2")], next_sync="T0")]
    await services.sync_engine.trigger_sync("google-c1")

    # evt-2 was removed at the provider and the tombstone aged out with the token
    fake_provider.incremental["T0"] = SyncTokenInvalid("410 Gone")
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T1")]

    result = await services.sync_engine.trigger_sync("google-c1")

    assert result.full_resyncs == 1
    assert result.deleted == 1
    assert await _mirror_ids(services) == ["evt-1"]
    assert (await services.sync_states.get("google-c1", "primary")).sync_token == "T1"


@pytest.mark.asyncio
async def test_full_resync_only_prunes_its_own_calendar(services, fake_provider):
    await link_connection(services, calendar_ids=["primary", "lab-shared"])
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="P0")]
    fake_provider.full_pages["lab-shared"] = [page([google_event("evt-2")], next_sync="S0")]
    fake_provider.incremental["S0"] = [page([], next_sync="S0")]
    await services.sync_engine.trigger_sync("google-c1")

    fake_provider.incremental["P0"] = SyncTokenInvalid("410 Gone")
    fake_provider.full_pages["primary"] = [page([], next_sync="P1")]

    await services.sync_engine.trigger_sync("google-c1")

    assert await _mirror_ids(services) == ["evt-2"]


@pytest.mark.asyncio
async def test_concurrent_triggers_are_coalesced(services, fake_provider):
    await link_connection(services)
    fake_provider.delay = 0.1
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]
    fake_provider.incremental["T0"] = [page([], next_sync="T0")]

    results = await asyncio.gather(*(services.sync_engine.trigger_sync("google-c1") for _ in range(5)))

    assert fake_provider.max_active == 1
    # One pass plus exactly one follow-up for everything that arrived meanwhile
    assert len(fake_provider.calls) == 2
    assert sum(1 for r in results if r is not None) == 1


@pytest.mark.asyncio
async def test_different_connections_sync_independently(services, fake_provider):
    await link_connection(services, "google-c1")
    await link_connection(services, "google-c2")
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]

    await services.sync_engine.run_periodic_sync()

    assert await _mirror_ids(services, "google-c1") == ["evt-1"]
    assert await _mirror_ids(services, "google-c2") == ["evt-1"]


@pytest.mark.asyncio
async def test_transient_failure_is_retried(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]
    fake_provider.errors = [TransientProviderError("HTTP 503", 503)]

    result = await services.sync_engine.trigger_sync("google-c1")

    assert result.status == "success"
    assert len(fake_provider.calls) == 2


@pytest.mark.asyncio
async def test_exhausted_retries_degrade_but_keep_connection_active(
    test_db, services, fake_provider, fake_oauth, settings
):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]
    await services.sync_engine.trigger_sync("google-c1")

    engine = SyncEngine(
        test_db,
        services.oauth,
        services.connections,
        services.mirror,
        services.sync_states,
        client_factory=fake_provider.client,
        settings=Settings(sync_max_attempts=3, sync_retry_backoff_seconds=0),
    )
    fake_provider.errors = [TransientProviderError("HTTP 429", 429)] * 3

    result = await engine.trigger_sync("google-c1")

    assert result.status == "failed"
    assert len(fake_provider.calls) == 4
    connection = await services.connections.get("google-c1")
    assert connection.status == ConnectionStatus.ACTIVE
    assert connection.is_degraded
    assert connection.consecutive_failures == 1
    assert (await services.mirror.get("google-c1", "evt-1")).sync_status == SyncStatus.STALE
    # Token from the last good pass is kept
    assert (await services.sync_states.get("google-c1", "primary")).sync_token == "T0"

    # The next scheduled pass still runs and clears the degradation
    fake_provider.incremental["T0"] = [page([google_event("evt-1")], next_sync="T1")]
    await engine.trigger_sync("google-c1")
    connection = await services.connections.get("google-c1")
    assert not connection.is_degraded
    assert (await services.mirror.get("google-c1", "evt-1")).sync_status == SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_unmappable_event_is_recorded_and_pass_completes(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1"), google_event("evt-2")], next_sync="T0")]
    fake_provider.incremental["T0"] = [
        page([google_event("evt-1", start={}), google_event("evt-3")], next_sync="T1"),
    ]
    await services.sync_engine.trigger_sync("google-c1")

    result = await services.sync_engine.trigger_sync("google-c1")

    assert result.status == "partial"
    assert len(result.errors) == 1 and "evt-1" in result.errors[0]
    assert (await services.mirror.get("google-c1", "evt-1")).sync_status == SyncStatus.SYNC_ERROR
    assert await services.mirror.exists("google-c1", "evt-3")
    assert (await services.sync_states.get("google-c1", "primary")).sync_token == "T1"


@pytest.mark.asyncio
async def test_refused_calendar_fails_alone_without_retry(services, fake_provider):
    await link_connection(services, calendar_ids=["gone-calendar", "primary"])
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="P0")]
    fake_provider.errors = [ProviderRequestRejected("HTTP 404 while listing events of gone-calendar", 404)]

    result = await services.sync_engine.trigger_sync("google-c1")

    assert result.status == "partial"
    assert len(result.errors) == 1 and "gone-calendar" in result.errors[0]
    assert [c["calendar_id"] for c in fake_provider.calls].count("gone-calendar") == 1
    assert await _mirror_ids(services) == ["evt-1"]
    assert await services.sync_states.get("google-c1", "gone-calendar") is None

    connection = await services.connections.get("google-c1")
    assert connection.status == ConnectionStatus.ACTIVE
    assert connection.is_degraded

    log = await services.sync_engine.get_sync_log("google-c1")
    assert len(log) == 1
    assert log[0]["status"] == "partial"


@pytest.mark.parametrize("status, expected", [
    (404, ProviderRequestRejected),
    (403, ProviderRequestRejected),
    (400, ProviderRequestRejected),
    (410, SyncTokenInvalid),
    (401, AuthenticationRequired),
    (503, TransientProviderError),
    (429, TransientProviderError),
])
def test_http_errors_are_translated(status, expected):
    error = HttpError(httplib2.Response({"status": status}), b"")

    with pytest.raises(expected):
        _raise_for_http_error(error, "listing events of primary")


@pytest.mark.asyncio
async def test_rejected_access_token_forces_one_refresh(services, fake_provider, fake_oauth):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]
    fake_provider.errors = [AuthenticationRequired("401")]

    result = await services.sync_engine.trigger_sync("google-c1")

    assert result.status == "success"
    assert fake_oauth.refresh_calls == ["refresh-1"]
    assert fake_provider.tokens_seen == ["access-1", "refreshed-1"]


@pytest.mark.asyncio
async def test_revoked_grant_fails_pass_and_requires_reconnect(services, fake_provider, fake_oauth):
    await link_connection(services)
    fake_provider.errors = [AuthenticationRequired("401")]
    fake_oauth.refresh_error = AuthenticationRequired("invalid_grant")

    result = await services.sync_engine.trigger_sync("google-c1")

    assert result.status == "failed"
    connection = await services.connections.get("google-c1")
    assert connection.status == ConnectionStatus.ERROR
    assert connection.needs_reconnect


@pytest.mark.asyncio
async def test_inactive_connection_is_skipped(services, fake_provider):
    await link_connection(services)
    await services.connections.set_status("google-c1", ConnectionStatus.ERROR, "reconnect")

    assert await services.sync_engine.trigger_sync("google-c1") is None
    assert fake_provider.calls == []


@pytest.mark.asyncio
async def test_sync_log_records_each_pass(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]

    await services.sync_engine.trigger_sync("google-c1")

    log = await services.sync_engine.get_sync_log("google-c1")
    assert len(log) == 1
    assert log[0]["status"] == "success"
    assert log[0]["imported"] == 1


@pytest.mark.asyncio
async def test_manual_sync_runs_in_background(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]

    task = services.sync_engine.trigger_manual_sync("google-c1")
    await task

    assert await _mirror_ids(services) == ["evt-1"]


@pytest.mark.asyncio
async def test_release_connection_marks_events_stale(services, fake_provider):
    await link_connection(services)
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="T0")]
    await services.sync_engine.trigger_sync("google-c1")

    await services.oauth.unlink("google-c1")

    assert (await services.mirror.get("google-c1", "evt-1")).sync_status == SyncStatus.STALE
    assert await services.sync_states.get("google-c1", "primary") is None


@pytest.mark.asyncio
async def test_calendars_sync_with_their_own_tokens(services, fake_provider):
    await link_connection(services, calendar_ids=["primary", "lab-shared"])
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="P0")]
    fake_provider.full_pages["lab-shared"] = [page([google_event("evt-2")], next_sync="S0")]

    await services.sync_engine.trigger_sync("google-c1")

    assert (await services.sync_states.get("google-c1", "primary")).sync_token == "P0"
    assert (await services.sync_states.get("google-c1", "lab-shared")).sync_token == "S0"
    assert (await services.mirror.get("google-c1", "evt-2")).calendar_id == "lab-shared"


@pytest.mark.asyncio
async def test_set_linked_calendars(services, fake_provider):
    await link_connection(services, calendar_ids=["primary", "lab-shared"])
    fake_provider.full_pages["primary"] = [page([google_event("evt-1")], next_sync="P0")]
    fake_provider.full_pages["lab-shared"] = [page([google_event("evt-2")], next_sync="S0")]
    fake_provider.full_pages["seminars"] = [page([google_event("evt-3")], next_sync="X0")]
    fake_provider.incremental["P0"] = [page([], next_sync="P0")]
    await services.sync_engine.trigger_sync("google-c1")
    await services.channels.ensure_channel("google-c1", "lab-shared")

    connection = await services.sync_engine.set_linked_calendars("google-c1", ["primary", "seminars"])
    await drain_background_tasks()

    assert connection.calendar_ids == ["primary", "seminars"]
    assert await services.sync_states.get("google-c1", "lab-shared") is None
    assert not await services.mirror.exists("google-c1", "evt-2")
    assert await services.mirror.exists("google-c1", "evt-3")
    assert [c.calendar_id for c in await services.channels.list_for_connection("google-c1")] == ["seminars"]


@pytest.mark.asyncio
async def test_set_linked_calendars_requires_one(services):
    await link_connection(services)

    with pytest.raises(ValueError):
        await services.sync_engine.set_linked_calendars("google-c1", [])


@pytest.mark.asyncio
async def test_list_remote_calendars(services):
    await link_connection(services)

    calendars = await services.sync_engine.list_remote_calendars("google-c1")

    assert calendars[0] == {
        "id": "researcher@example.org",
        "summary": "Researcher",
        "primary": True,
        "access_role": "owner",
    }
    assert calendars[1]["primary"] is False
