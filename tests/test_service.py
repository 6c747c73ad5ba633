import json
import threading
from datetime import timedelta
from unittest import mock

import pytest

import token_shepherd as ts
from conftest import NOW, FakeResponse, entry


def _payload(five=20.0, five_reset=NOW + timedelta(hours=3), seven=10.0):
    return {
        "five_hour": {"utilization": five, "resets_at": ts.fmt_iso(five_reset)},
        "seven_day": {"utilization": seven, "resets_at": ts.fmt_iso(NOW + timedelta(days=3))},
        "seven_day_sonnet": None,
        "extra_usage": {"is_enabled": False},
    }


@pytest.fixture
def creds(data_dir):
    (data_dir / "credentials.json").write_text(json.dumps({"claudeAiOauth": {
        "accessToken": "tok", "refreshToken": "ref",
        "expiresAt": 4102444800000, "subscriptionType": "pro",
    }}))


@pytest.fixture
def api():
    with mock.patch.object(ts.requests, "get", return_value=FakeResponse(200, _payload())) as get:
        yield get


def test_refresh_loads_and_records(creds, api):
    service = ts.QuotaService({})
    assert service.state.is_loading

    state = service.refresh(now=NOW)
    assert state.error is None
    assert state.data.five_hour.utilization == 0.2
    assert service.credentials.subscription_type == "pro"
    assert service.last_raw["five_hour"]["utilization"] == 20.0
    assert len(ts.read_history()) == 1


def test_refresh_throttled_unless_forced(creds, api):
    service = ts.QuotaService({})
    service.refresh(now=NOW)
    service.refresh(now=NOW + timedelta(seconds=10))
    assert api.call_count == 1

    service.refresh(force=True, now=NOW + timedelta(seconds=10))
    assert api.call_count == 2

    service.refresh(now=NOW + timedelta(seconds=45))
    assert api.call_count == 3


def test_refresh_skipped_while_fetching(creds, api):
    service = ts.QuotaService({})
    service._fetching = True
    state = service.refresh(now=NOW)
    assert state.is_loading
    assert api.call_count == 0


def test_missing_credentials_is_error_state():
    service = ts.QuotaService({})
    state = service.refresh(now=NOW)
    assert state.data is None
    assert state.error == "No Claude Code credentials found"


def test_api_error_message(creds):
    with mock.patch.object(ts.requests, "get", return_value=FakeResponse(500, text="overloaded")):
        state = ts.QuotaService({}).refresh(now=NOW)
    assert state.error == "API error (500): overloaded"


def test_unauthorized_refreshes_token_once(creds, monkeypatch):
    refreshed = []

    def fake_refresh(c, path=None):
        refreshed.append(path)
        return ts.OAuthCredentials("tok2", "ref2", NOW + timedelta(days=3650))

    monkeypatch.setattr(ts, "refresh_access_token", fake_refresh)
    replies = [FakeResponse(401, text="expired"), FakeResponse(200, _payload())]
    with mock.patch.object(ts.requests, "get", side_effect=replies) as get:
        state = ts.QuotaService({}).refresh(now=NOW)

    assert state.data is not None
    assert len(refreshed) == 1
    assert get.call_args.kwargs["headers"]["Authorization"] == "Bearer tok2"


def test_unexpected_exception_becomes_error_state(creds, monkeypatch):
    monkeypatch.setattr(ts, "parse_quota", mock.Mock(side_effect=RuntimeError("kaboom")))
    with mock.patch.object(ts.requests, "get", return_value=FakeResponse(200, _payload())):
        state = ts.QuotaService({}).refresh(now=NOW)
    assert state.error.startswith("Unexpected error")


def test_rollover_written_before_new_entry(creds):
    old_reset = NOW - timedelta(minutes=1)
    ts.append_history(entry(old_reset - timedelta(hours=2), 0.4,
                            five_reset=old_reset, seven_reset=NOW + timedelta(days=3)))

    with mock.patch.object(ts.requests, "get", return_value=FakeResponse(200, _payload(five=1.0))):
        ts.QuotaService({}).refresh(now=NOW)

    summaries = ts.read_window_summaries()
    assert [s.window_type for s in summaries] == ["5-hour"]
    assert summaries[0].peak_utilization == 0.4
    assert len(ts.read_history()) == 2


def test_alerts_delivered(creds):
    got = []
    with mock.patch.object(ts.requests, "get", return_value=FakeResponse(200, _payload(five=95.0))):
        ts.QuotaService({}, on_alert=got.append).refresh(now=NOW)
    assert [a.id for a in got] == ["five-hour-low"]


def test_superseded_fetch_dropped(creds):
    got = []
    service = ts.QuotaService({}, on_alert=got.append)

    def get_while_newer_fetch_starts(*args, **kwargs):
        service._generation += 1
        return FakeResponse(200, _payload(five=95.0))

    with mock.patch.object(ts.requests, "get", side_effect=get_while_newer_fetch_starts):
        state = service.refresh(now=NOW)

    assert state.is_loading
    assert service.state.is_loading
    assert ts.read_history() == []
    assert got == []
    assert service.last_raw == {}


def test_stale_data_kept_while_refreshing(creds, api):
    service = ts.QuotaService({})
    service.refresh(now=NOW)
    seen = []

    def watch_fetch(now):
        seen.append(service.state.data)
        return ts.QuotaState(error="later"), {}

    service._fetch = watch_fetch
    service.refresh(force=True, now=NOW)
    assert seen[0] is not None


def test_undecodable_history_does_not_wedge_service(creds, api, data_dir):
    (data_dir / "history.jsonl").write_bytes(b"\xff\xfe garbage\n")
    service = ts.QuotaService({})

    state = service.refresh(now=NOW)
    assert state.data is not None
    assert not service._fetching
    assert len(ts.read_history()) == 1

    assert service.refresh(now=NOW + timedelta(seconds=45)).data is not None
    assert api.call_count == 2


def test_fetching_flag_cleared_when_bookkeeping_raises(creds, api, monkeypatch):
    monkeypatch.setattr(ts.AlertTracker, "evaluate", mock.Mock(side_effect=RuntimeError("kaboom")))
    service = ts.QuotaService({})
    with pytest.raises(RuntimeError):
        service.refresh(now=NOW)
    assert not service._fetching


def test_schedule_refresh_runs_in_background(creds, api):
    service = ts.QuotaService({})
    t = service.schedule_refresh(force=True)
    t.join(timeout=5)
    assert t.daemon
    assert service.state.data is not None


def test_run_loop_stops(creds, api):
    service = ts.QuotaService({})
    stop = threading.Event()
    updates = []

    def on_update(state):
        updates.append(state)
        stop.set()

    service.run(interval=0.01, on_update=on_update, stop_event=stop)
    assert len(updates) == 1
    assert updates[0].data is not None
