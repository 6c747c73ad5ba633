from datetime import datetime, timedelta, timezone

import pytest

import token_shepherd as ts

NOW = datetime(2025, 6, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Point every on-disk path at a temp dir."""
    monkeypatch.setattr(ts, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(ts, "LOG_FILE", str(tmp_path / "tokenshepherd.log"))
    monkeypatch.setattr(ts, "CONFIG_FILE", str(tmp_path / "config.json"))
    monkeypatch.setattr(ts, "HISTORY_FILE", str(tmp_path / "history.jsonl"))
    monkeypatch.setattr(ts, "WINDOWS_FILE", str(tmp_path / "windows.jsonl"))
    monkeypatch.setattr(ts, "CREDENTIALS_FILE", str(tmp_path / "credentials.json"))
    monkeypatch.setattr(ts, "STATS_CACHE_FILE", str(tmp_path / "stats-cache.json"))
    return tmp_path


def window(util, resets_in_s, now=NOW):
    return ts.QuotaWindow(util, now + timedelta(seconds=resets_in_s))


def entry(ts_, five, seven=0.1, five_reset=None, seven_reset=None):
    return ts.HistoryEntry(
        ts=ts_,
        five_hour_util=five,
        seven_day_util=seven,
        five_hour_resets_at=five_reset or NOW + timedelta(hours=2),
        seven_day_resets_at=seven_reset or NOW + timedelta(days=3),
    )


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else str(payload))

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON")
        return self._payload
