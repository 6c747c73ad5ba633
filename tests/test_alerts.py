from datetime import timedelta

import token_shepherd as ts
from conftest import NOW, window


def _quota(five, seven=None):
    return ts.QuotaData(five_hour=five, seven_day=seven or window(0.1, 3 * 86400), fetched_at=NOW)


# ── shepherd state ──

def test_state_expired_window_is_calm():
    assert ts.shepherd_state(window(1.0, -5), None, None, now=NOW) == ts.STATE_CALM


def test_state_ladder():
    w = lambda u: window(u, 9000)
    assert ts.shepherd_state(w(1.0), None, None, now=NOW) == ts.STATE_LOCKED
    assert ts.shepherd_state(w(0.92), None, None, now=NOW) == ts.STATE_LOW
    assert ts.shepherd_state(w(0.5), None, 0.95, now=NOW) == ts.STATE_LOW
    assert ts.shepherd_state(w(0.75), None, 0.8, now=NOW) == ts.STATE_WARM
    assert ts.shepherd_state(w(0.4), None, 0.75, now=NOW) == ts.STATE_TRAJECTORY
    assert ts.shepherd_state(w(0.2), None, 0.4, now=NOW) == ts.STATE_CALM


def test_state_pace_warning_is_trajectory():
    pace = ts.PaceInfo(time_to_limit=100, time_to_reset=200, show_warning=True, computed_at=NOW)
    assert ts.shepherd_state(window(0.3, 9000), pace, None, now=NOW) == ts.STATE_TRAJECTORY


def test_worst_state():
    assert ts.worst_state(ts.STATE_CALM, ts.STATE_WARM, ts.STATE_TRAJECTORY) == ts.STATE_WARM
    assert ts.worst_state(ts.STATE_LOCKED, ts.STATE_LOW) == ts.STATE_LOCKED
    assert ts.worst_state() == ts.STATE_CALM


# ── alert tracker ──

def test_running_low_fires_once_per_cycle():
    tracker = ts.AlertTracker({})
    quota = _quota(window(0.95, 2 * 3600))

    alerts = tracker.evaluate(quota, now=NOW)
    assert [a.id for a in alerts] == ["five-hour-low"]
    assert alerts[0].body == "5-hour window at 90%. Resets in 2h 0m."
    assert tracker.evaluate(quota, now=NOW) == []


def test_escalation_then_restore():
    tracker = ts.AlertTracker({})
    reset = 2 * 3600
    tracker.evaluate(_quota(window(0.95, reset)), now=NOW)

    locked = tracker.evaluate(_quota(window(1.0, reset)), now=NOW)
    assert [a.id for a in locked] == ["five-hour-locked"]
    assert locked[0].body.startswith("Limit reached. Back at ")

    # same threshold in the same cycle stays quiet
    assert tracker.evaluate(_quota(window(1.0, reset)), now=NOW) == []

    fresh = tracker.evaluate(_quota(window(0.0, 5 * 3600)), now=NOW)
    assert [a.id for a in fresh] == ["five-hour-restored"]
    assert fresh[0].body == "Quota restored."


def test_pace_alert():
    tracker = ts.AlertTracker({})
    alerts = tracker.evaluate(_quota(window(0.6, 9000)), now=NOW)
    assert [a.id for a in alerts] == ["five-hour-pace"]
    assert alerts[0].body.startswith("At current pace, 5-hour limit around ")
    assert alerts[0].body.endswith("Resets in 2h 30m.")


def test_pace_alert_needs_half_used():
    tracker = ts.AlertTracker({})
    # pace warns (40% after 1h) but utilization is below 50%
    assert tracker.evaluate(_quota(window(0.4, 4 * 3600)), now=NOW) == []


def test_seven_day_window_tracked_separately():
    tracker = ts.AlertTracker({})
    quota = _quota(window(0.2, 9000), window(0.93, 2 * 86400))
    alerts = tracker.evaluate(quota, now=NOW)
    assert [a.id for a in alerts] == ["seven-day-low"]
    assert alerts[0].body == "7-day window at 90%. Resets in 2d."


def test_disabled_alert_kind_is_silent_but_tracked():
    tracker = ts.AlertTracker({"notifications": {"low": False}})
    quota = _quota(window(0.95, 2 * 3600))
    assert tracker.evaluate(quota, now=NOW) == []

    tracker.config["notifications"]["low"] = True
    assert tracker.evaluate(quota, now=NOW) == []


def test_cycle_change_resets_tracking():
    tracker = ts.AlertTracker({})
    tracker.evaluate(_quota(window(0.95, 3600)), now=NOW)
    later = NOW + timedelta(hours=2)
    quota = _quota(window(0.95, 3 * 3600, now=later))
    alerts = tracker.evaluate(quota, now=later)
    assert [a.id for a in alerts] == ["five-hour-low"]
