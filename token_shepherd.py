#!/usr/bin/env python3
"""
TokenShepherd: Claude Code quota shepherd for the terminal

Polls the Claude Code usage endpoint and keeps an eye on both rolling
rate-limit windows:
  1. 5-hour window  → current session
  2. 7-day window   → weekly limit (plus the Sonnet-only sub-window)

For each window it shows utilization, a pace projection to the reset, a
trend over the last hour and a sparkline of the current cycle. Every poll
is appended to ~/.tokenshepherd/history.jsonl; closed windows are
summarised into ~/.tokenshepherd/windows.jsonl.

Setup:
  pip install -e .
  tokenshepherd            # one-shot status
  tokenshepherd watch      # poll every minute
"""

import argparse
import json
import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from curl_cffi import CurlError
from curl_cffi import requests

__version__ = "0.1.0"

# ── logging ──────────────────────────────────────────────────────────────────

DATA_DIR = os.environ.get("TOKENSHEPHERD_HOME") or os.path.expanduser("~/.tokenshepherd")
LOG_FILE = os.path.join(DATA_DIR, "tokenshepherd.log")

log = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False):
    os.makedirs(DATA_DIR, exist_ok=True)
    logging.basicConfig(
        filename=LOG_FILE,
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


CONFIG_FILE = os.path.join(DATA_DIR, "config.json")
HISTORY_FILE = os.path.join(DATA_DIR, "history.jsonl")
WINDOWS_FILE = os.path.join(DATA_DIR, "windows.jsonl")

CREDENTIALS_FILE = os.path.expanduser("~/.claude/.credentials.json")
STATS_CACHE_FILE = os.path.expanduser("~/.claude/stats-cache.json")

DEFAULT_REFRESH = 60          # one tick per minute
MIN_REFRESH_INTERVAL = 30     # loaded data younger than this is not refetched
HISTORY_MAX_DAYS = 7

FIVE_HOUR = 18_000            # seconds
SEVEN_DAY = 604_800

RESET_TOLERANCE = 60          # resets_at jitter between polls, seconds
MIN_PACE_ELAPSED = 60         # need at least 1 min into the window
TREND_LOOKBACK_MIN = 60
TREND_MIN_SPAN = 5 * 60
EXPIRY_BUFFER = 5 * 60        # treat tokens as expired 5 min early

WARM_UTIL = 0.7
LOW_UTIL = 0.9
PACE_ALERT_MIN_UTIL = 0.5

_NOTIF_DEFAULTS = {
    "pace":     True,   # at current pace the limit lands before the reset
    "low":      True,   # window at 90%
    "locked":   True,   # limit reached
    "restored": True,   # a locked window rolled over
}


# ── config ────────────────────────────────────────────────────────────────────

def load_config() -> dict:
    if os.path.exists(CONFIG_FILE):
        try:
            with open(CONFIG_FILE) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            corrupt = CONFIG_FILE + ".bak"
            log.warning("Config file corrupt (%s), resetting. Backup at %s", e, corrupt)
            try:
                os.replace(CONFIG_FILE, corrupt)
            except OSError:
                pass
    return {}


def save_config(cfg: dict):
    os.makedirs(os.path.dirname(CONFIG_FILE), exist_ok=True)
    tmp = CONFIG_FILE + ".tmp"
    with open(tmp, "w") as f:
        json.dump(cfg, f, indent=2)
    os.replace(tmp, CONFIG_FILE)


def _notif_enabled(cfg: dict, key: str) -> bool:
    """Return True if the named alert is enabled (defaults to True)."""
    return cfg.get("notifications", {}).get(key, _NOTIF_DEFAULTS.get(key, True))


def _coerce_config_value(raw: str):
    low = raw.lower()
    if low in ("true", "on", "yes"):
        return True
    if low in ("false", "off", "no"):
        return False
    try:
        return int(raw)
    except ValueError:
        return raw


def set_config_value(cfg: dict, key: str, raw: str) -> dict:
    """Set `key` (dotted for nested maps, e.g. notifications.pace) and persist."""
    value = _coerce_config_value(raw)
    target = cfg
    *parents, leaf = key.split(".")
    for part in parents:
        target = target.setdefault(part, {})
        if not isinstance(target, dict):
            raise ValueError(f"{part} is not a section")
    target[leaf] = value
    save_config(cfg)
    return cfg


# ── errors ────────────────────────────────────────────────────────────────────

class ShepherdError(Exception):
    """Base class for errors shown inline instead of quota data."""


class CredentialsError(ShepherdError):
    pass


class TokenRefreshError(ShepherdError):
    pass


class QuotaParseError(ShepherdError):
    def __str__(self):
        return f"Malformed quota response: {self.args[0]}"


class QuotaAPIError(ShepherdError):
    """Non-200 reply (status > 0) or transport failure (status == 0)."""

    def __init__(self, status: int, body: str):
        super().__init__(status, body)
        self.status = status
        self.body = body

    def __str__(self):
        if self.status == 0:
            return f"Network error: {self.body}"
        return f"API error ({self.status}): {self.body}"


# ── time helpers ──────────────────────────────────────────────────────────────

_DAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(val) -> datetime | None:
    """Parse an ISO 8601 timestamp ('Z' suffix and fractional seconds ok)."""
    if not val or not isinstance(val, str):
        return None
    s = val.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        log.debug("parse_iso failed for %r", val)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def fmt_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def dates_match(a: datetime, b: datetime, tolerance: float = RESET_TOLERANCE) -> bool:
    return abs((a - b).total_seconds()) <= tolerance


def fmt_resets_in(seconds: float) -> str:
    """Countdown to a reset: 'now', '2d', '2d 3h', '3h 5m', '12m'."""
    if seconds <= 0:
        return "now"
    total_minutes = int(seconds) // 60
    days, rem = divmod(total_minutes, 1440)
    hours, minutes = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours}h" if hours > 0 else f"{days}d"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def fmt_interval(seconds: float) -> str:
    """Approximate duration: 3900 → '~1h 5m', 720 → '~12m'."""
    total_minutes = int(seconds) // 60
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"~{hours}h {minutes}m"
    return f"~{minutes}m"


def _fmt_clock(dt: datetime) -> str:
    hour = dt.hour % 12 or 12
    return f"{hour}:{dt.minute:02d} {'AM' if dt.hour < 12 else 'PM'}"


def fmt_time(dt: datetime, now: datetime | None = None) -> str:
    """Local wall-clock time: '3:05 PM', 'tomorrow 9:00 AM', 'Thu 9:00 AM'."""
    now = now or _utcnow()
    local, local_now = dt.astimezone(), now.astimezone()
    clock = _fmt_clock(local)
    if local.date() == local_now.date():
        return clock
    if local.date() == local_now.date() + timedelta(days=1):
        return f"tomorrow {clock}"
    return f"{_DAYS[local.weekday()]} {clock}"


def fmt_token_count(count: int) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M tokens"
    if count >= 1_000:
        return f"{count / 1_000:.0f}K tokens"
    return f"{count} tokens"


# ── data models ───────────────────────────────────────────────────────────────

@dataclass
class QuotaWindow:
    utilization: float      # 0.0–1.0
    resets_at: datetime

    @property
    def is_locked(self) -> bool:
        return self.utilization >= 1.0

    def seconds_to_reset(self, now: datetime | None = None) -> float:
        return (self.resets_at - (now or _utcnow())).total_seconds()

    def resets_in(self, now: datetime | None = None) -> str:
        return fmt_resets_in(self.seconds_to_reset(now))


@dataclass
class ExtraUsage:
    is_enabled: bool = False
    monthly_limit: float | None = None
    used_credits: float | None = None


@dataclass
class QuotaData:
    five_hour: QuotaWindow
    seven_day: QuotaWindow
    seven_day_sonnet: QuotaWindow | None = None
    extra_usage: ExtraUsage = field(default_factory=ExtraUsage)
    fetched_at: datetime = field(default_factory=_utcnow)

    @property
    def binding_window(self) -> QuotaWindow:
        if self.five_hour.utilization >= self.seven_day.utilization:
            return self.five_hour
        return self.seven_day

    @property
    def binding_window_duration(self) -> int:
        if self.five_hour.utilization >= self.seven_day.utilization:
            return FIVE_HOUR
        return SEVEN_DAY


@dataclass
class QuotaState:
    """Loading (both None), loaded (`data`) or failed (`error`)."""
    data: QuotaData | None = None
    error: str | None = None

    @property
    def is_loading(self) -> bool:
        return self.data is None and self.error is None


@dataclass
class OAuthCredentials:
    access_token: str
    refresh_token: str
    expires_at: datetime
    subscription_type: str | None = None
    rate_limit_tier: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return ((now or _utcnow()) - self.expires_at).total_seconds() > -EXPIRY_BUFFER


@dataclass
class HistoryEntry:
    ts: datetime
    five_hour_util: float
    seven_day_util: float
    five_hour_resets_at: datetime
    seven_day_resets_at: datetime

    @classmethod
    def from_quota(cls, quota: QuotaData) -> "HistoryEntry":
        return cls(
            ts=quota.fetched_at,
            five_hour_util=quota.five_hour.utilization,
            seven_day_util=quota.seven_day.utilization,
            five_hour_resets_at=quota.five_hour.resets_at,
            seven_day_resets_at=quota.seven_day.resets_at,
        )

    def util(self, is_five_hour: bool) -> float:
        return self.five_hour_util if is_five_hour else self.seven_day_util

    def resets_at(self, is_five_hour: bool) -> datetime:
        return self.five_hour_resets_at if is_five_hour else self.seven_day_resets_at

    def to_json(self) -> dict:
        return {
            "ts": fmt_iso(self.ts),
            "fiveHourUtil": self.five_hour_util,
            "sevenDayUtil": self.seven_day_util,
            "fiveHourResetsAt": fmt_iso(self.five_hour_resets_at),
            "sevenDayResetsAt": fmt_iso(self.seven_day_resets_at),
        }

    @classmethod
    def from_json(cls, d: dict) -> "HistoryEntry":
        return cls(
            ts=_require_dt(d["ts"]),
            five_hour_util=float(d["fiveHourUtil"]),
            seven_day_util=float(d["sevenDayUtil"]),
            five_hour_resets_at=_require_dt(d["fiveHourResetsAt"]),
            seven_day_resets_at=_require_dt(d["sevenDayResetsAt"]),
        )


@dataclass
class WindowSummary:
    closed_at: datetime
    window_type: str          # "5-hour" or "7-day"
    peak_utilization: float
    avg_rate: float           # utilization per hour
    entry_count: int
    was_locked: bool

    def to_json(self) -> dict:
        return {
            "closedAt": fmt_iso(self.closed_at),
            "windowType": self.window_type,
            "peakUtilization": self.peak_utilization,
            "avgRate": self.avg_rate,
            "entryCount": self.entry_count,
            "wasLocked": self.was_locked,
        }

    @classmethod
    def from_json(cls, d: dict) -> "WindowSummary":
        return cls(
            closed_at=_require_dt(d["closedAt"]),
            window_type=str(d["windowType"]),
            peak_utilization=float(d["peakUtilization"]),
            avg_rate=float(d["avgRate"]),
            entry_count=int(d["entryCount"]),
            was_locked=bool(d["wasLocked"]),
        )


@dataclass
class PaceInfo:
    time_to_limit: float      # seconds
    time_to_reset: float      # seconds
    show_warning: bool
    computed_at: datetime = field(default_factory=_utcnow)

    @property
    def time_to_limit_formatted(self) -> str:
        return fmt_interval(self.time_to_limit)

    @property
    def time_to_reset_formatted(self) -> str:
        return fmt_interval(self.time_to_reset)

    @property
    def limit_at(self) -> datetime:
        return self.computed_at + timedelta(seconds=self.time_to_limit)


@dataclass
class TrendInfo:
    velocity_per_hour: float  # utilization delta per hour
    recent_delta: float
    lookback_minutes: int
    span_seconds: float


@dataclass
class TokenSummary:
    today: int
    yesterday: int
    last_7_days: int
    dominant_model: str | None = None


def _require_dt(val) -> datetime:
    dt = parse_iso(val)
    if dt is None:
        raise ValueError(f"bad timestamp {val!r}")
    return dt


def _clamp_util(val: float) -> float:
    return min(1.0, max(0.0, val))


# ── credentials ───────────────────────────────────────────────────────────────

OAUTH_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
# Public OAuth client id used by Claude Code itself.
OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
USER_AGENT = f"tokenshepherd/{__version__}"


def _credentials_path(cfg: dict | None = None) -> str:
    return (cfg or {}).get("credentials_file") or CREDENTIALS_FILE


def _oauth_block(data: dict) -> dict | None:
    """Nested { claudeAiOauth: {...} } or legacy fields at the root."""
    nested = data.get("claudeAiOauth")
    if isinstance(nested, dict):
        return nested
    if "accessToken" in data:
        return data
    return None


def _parse_expiry(val) -> datetime:
    # Claude Code stores epoch milliseconds; older files carry ISO strings.
    if isinstance(val, bool):
        return _EPOCH
    if isinstance(val, (int, float)):
        try:
            return datetime.fromtimestamp(val / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return _EPOCH
    return parse_iso(val) or _EPOCH


def load_credentials(path: str | None = None) -> OAuthCredentials:
    path = path or CREDENTIALS_FILE
    try:
        with open(path) as f:
            raw = f.read().strip()
    except FileNotFoundError:
        raise CredentialsError("No Claude Code credentials found") from None
    except OSError as e:
        raise CredentialsError(f"Credentials read error: {e}") from e
    if not raw:
        raise CredentialsError("No Claude Code credentials found")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise CredentialsError("Credentials parse error: invalid JSON") from None
    if not isinstance(data, dict):
        raise CredentialsError("Credentials parse error: invalid JSON")

    oauth = _oauth_block(data)
    if oauth is None:
        raise CredentialsError("No valid credentials found")

    access, refresh = oauth.get("accessToken"), oauth.get("refreshToken")
    if not isinstance(access, str) or not isinstance(refresh, str):
        raise CredentialsError(
            "Credentials parse error: missing accessToken or refreshToken"
        )
    return OAuthCredentials(
        access_token=access,
        refresh_token=refresh,
        expires_at=_parse_expiry(oauth.get("expiresAt")),
        subscription_type=oauth.get("subscriptionType"),
        rate_limit_tier=oauth.get("rateLimitTier"),
    )


def _exchange_refresh_token(refresh_token: str) -> dict:
    try:
        r = requests.post(
            OAUTH_TOKEN_URL,
            json={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": OAUTH_CLIENT_ID,
            },
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            timeout=15,
        )
    except CurlError as e:
        raise TokenRefreshError(f"token endpoint unreachable: {e}") from e
    log.debug("POST %s  status=%s", OAUTH_TOKEN_URL, r.status_code)
    if r.status_code != 200:
        raise TokenRefreshError(f"token endpoint returned {r.status_code}")
    try:
        tokens = r.json()
    except ValueError as e:
        raise TokenRefreshError(f"token endpoint returned invalid JSON: {e}") from e
    if not isinstance(tokens, dict) or not tokens.get("access_token"):
        raise TokenRefreshError("token endpoint returned no access_token")
    return tokens


def _write_refreshed_tokens(path: str, tokens: dict, now: datetime | None = None):
    """Merge new tokens into the credentials file (atomic write, unknown keys kept)."""
    with open(path) as f:
        data = json.load(f)
    target = _oauth_block(data)
    if target is None:
        target = data.setdefault("claudeAiOauth", {})

    target["accessToken"] = tokens["access_token"]
    if tokens.get("refresh_token"):
        target["refreshToken"] = tokens["refresh_token"]
    expires_in = tokens.get("expires_in")
    if isinstance(expires_in, (int, float)):
        expires_at = (now or _utcnow()) + timedelta(seconds=expires_in)
        target["expiresAt"] = int(expires_at.timestamp() * 1000)

    tmp = path + ".tmp"
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    # O_CREAT mode only applies to new files; a leftover tmp keeps its own.
    os.chmod(tmp, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f)
    os.replace(tmp, path)


def _cli_refresh_fallback() -> bool:
    """Let the claude CLI refresh its own token by running a trivial prompt."""
    env = dict(os.environ)
    home = os.path.expanduser("~")
    env["PATH"] = (
        f"{home}/.local/bin:/usr/local/bin:/opt/homebrew/bin:"
        + env.get("PATH", "/usr/bin:/bin")
    )
    try:
        result = subprocess.run(
            ["claude", "--print", "hi"],
            input="", capture_output=True, text=True, timeout=10, env=env,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.warning("claude CLI refresh failed: %s", e)
        return False
    log.debug("claude CLI refresh rc=%d", result.returncode)
    return result.returncode == 0


def refresh_access_token(creds: OAuthCredentials, path: str | None = None) -> OAuthCredentials:
    """Refresh an expired token and return the re-read credentials.

    Tries the OAuth refresh-token exchange first. The claude CLI is the
    fallback, since it rewrites the credentials file on its own.
    """
    path = path or CREDENTIALS_FILE
    log.info("Token expired, triggering refresh...")
    try:
        tokens = _exchange_refresh_token(creds.refresh_token)
        _write_refreshed_tokens(path, tokens)
        log.info("OAuth token refreshed")
    except (TokenRefreshError, OSError, ValueError) as e:
        log.warning("Direct token refresh failed (%s), falling back to claude CLI", e)
        if not _cli_refresh_fallback():
            raise TokenRefreshError("Token expired and refresh failed") from e

    try:
        return load_credentials(path)
    except CredentialsError as e:
        raise TokenRefreshError(
            f"Token refresh succeeded but re-read failed: {e}"
        ) from e


# ── quota API ─────────────────────────────────────────────────────────────────

USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
HEADERS = {
    "Accept": "application/json",
    "anthropic-beta": "oauth-2025-04-20",
    "User-Agent": USER_AGENT,
}


def fetch_quota(access_token: str) -> dict:
    headers = {**HEADERS, "Authorization": f"Bearer {access_token}"}
    try:
        r = requests.get(USAGE_URL, headers=headers, timeout=15)
    except CurlError as e:
        raise QuotaAPIError(0, str(e)) from e
    log.debug("GET %s  status=%s  body=%s", USAGE_URL, r.status_code, r.text[:800])
    if r.status_code != 200:
        raise QuotaAPIError(r.status_code, r.text[:200] or "Unknown error")
    try:
        return r.json()
    except ValueError as e:
        raise QuotaParseError(f"invalid JSON ({e})") from e


def _window(raw: dict, key: str, fetched_at: datetime) -> QuotaWindow | None:
    bucket = raw.get(key)
    if not isinstance(bucket, dict):
        return None
    try:
        pct = float(bucket.get("utilization") or 0)
    except (TypeError, ValueError):
        raise QuotaParseError(f"bad utilization in {key}") from None
    # The wire carries 0–100; everything past this point is 0.0–1.0.
    return QuotaWindow(
        utilization=_clamp_util(pct / 100.0),
        resets_at=parse_iso(bucket.get("resets_at")) or fetched_at,
    )


def parse_quota(raw: dict, fetched_at: datetime | None = None) -> QuotaData:
    """
    API response shape:
      five_hour        → 5-hour window       {utilization, resets_at}
      seven_day        → 7-day window
      seven_day_sonnet → 7-day Sonnet-only   (optional / null)
      extra_usage      → {is_enabled, monthly_limit, used_credits}
    """
    fetched_at = fetched_at or _utcnow()
    if not isinstance(raw, dict):
        raise QuotaParseError("not an object")
    five_hour = _window(raw, "five_hour", fetched_at)
    seven_day = _window(raw, "seven_day", fetched_at)
    if five_hour is None or seven_day is None:
        missing = "five_hour" if five_hour is None else "seven_day"
        raise QuotaParseError(f"missing {missing}")

    extra = raw.get("extra_usage") or {}
    if not isinstance(extra, dict):
        raise QuotaParseError("bad extra_usage")
    return QuotaData(
        five_hour=five_hour,
        seven_day=seven_day,
        seven_day_sonnet=_window(raw, "seven_day_sonnet", fetched_at),
        extra_usage=ExtraUsage(
            is_enabled=bool(extra.get("is_enabled")),
            monthly_limit=extra.get("monthly_limit"),
            used_credits=extra.get("used_credits"),
        ),
        fetched_at=fetched_at,
    )


# ── pace ──────────────────────────────────────────────────────────────────────

def _elapsed(window: QuotaWindow, duration: float, now: datetime) -> tuple[float, float] | None:
    """(elapsed, time_to_reset) in seconds, or None if there's too little to go on."""
    time_to_reset = window.seconds_to_reset(now)
    if time_to_reset <= 0:
        return None
    elapsed = duration - time_to_reset
    if elapsed <= MIN_PACE_ELAPSED:
        return None
    return elapsed, time_to_reset


def calc_pace(window: QuotaWindow, duration: float, now: datetime | None = None) -> PaceInfo | None:
    """Linear pace: will the current rate hit the limit before the reset?"""
    now = now or _utcnow()
    span = _elapsed(window, duration, now)
    if span is None or window.utilization <= 0 or window.is_locked:
        return None
    elapsed, time_to_reset = span
    rate = window.utilization / elapsed   # utilization per second
    time_to_limit = (1.0 - window.utilization) / rate
    return PaceInfo(
        time_to_limit=time_to_limit,
        time_to_reset=time_to_reset,
        show_warning=time_to_limit < time_to_reset,
        computed_at=now,
    )


def projected_at_reset(window: QuotaWindow, duration: float,
                       now: datetime | None = None) -> float | None:
    """Utilization expected at the reset if the average rate holds.

    Clamped to [current utilization, 1.0].
    """
    now = now or _utcnow()
    span = _elapsed(window, duration, now)
    if span is None:
        return None
    elapsed, _ = span
    rate = window.utilization / elapsed
    return min(1.0, max(window.utilization, rate * duration))


# ── trend + sparkline ─────────────────────────────────────────────────────────

def calc_trend(entries: list[HistoryEntry], is_five_hour: bool,
               lookback_minutes: int = TREND_LOOKBACK_MIN,
               now: datetime | None = None) -> TrendInfo | None:
    """Utilization velocity (delta per hour) over the lookback period.

    Returns None with fewer than 2 entries or less than 5 minutes of data.
    """
    now = now or _utcnow()
    cutoff = now - timedelta(minutes=lookback_minutes)
    recent = sorted((e for e in entries if e.ts >= cutoff), key=lambda e: e.ts)
    if len(recent) < 2:
        return None

    first, last = recent[0], recent[-1]
    span = (last.ts - first.ts).total_seconds()
    if span < TREND_MIN_SPAN:
        return None

    delta = last.util(is_five_hour) - first.util(is_five_hour)
    return TrendInfo(
        velocity_per_hour=delta / (span / 3600),
        recent_delta=delta,
        lookback_minutes=lookback_minutes,
        span_seconds=span,
    )


def sparkline_buckets(entries: list[HistoryEntry], is_five_hour: bool,
                      window_start: datetime, window_end: datetime,
                      bucket_count: int = 30) -> list[float]:
    """Bin entries into equal time buckets; gaps are forward-filled."""
    ordered = sorted(entries, key=lambda e: e.ts)
    total = (window_end - window_start).total_seconds()
    if not ordered or total <= 0 or bucket_count <= 0:
        return []
    bucket_size = total / bucket_count

    buckets: list[float | None] = [None] * bucket_count
    for e in ordered:
        offset = (e.ts - window_start).total_seconds()
        if offset < 0:
            continue
        idx = min(int(offset / bucket_size), bucket_count - 1)
        buckets[idx] = e.util(is_five_hour)

    last = next((b for b in buckets if b is not None), 0.0)
    filled = []
    for b in buckets:
        if b is None:
            b = last
        filled.append(b)
        last = b
    return filled


def sparkline_has_variation(buckets: list[float]) -> bool:
    return len(buckets) >= 2 and (max(buckets) - min(buckets)) >= 0.02


def render_sparkline(buckets: list[float]) -> str:
    """Render bucket values with block chars, scaled to their own range."""
    if not sparkline_has_variation(buckets):
        return ""
    blocks = "▁▂▃▄▅▆▇█"
    lo, hi = min(buckets), max(buckets)
    span = hi - lo
    return "".join(blocks[min(7, int((v - lo) / span * 7))] for v in buckets)


# ── history store (JSON Lines) ────────────────────────────────────────────────

def _append_jsonl(path: str, obj: dict):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a") as f:
        f.write(json.dumps(obj) + "\n")


def _read_jsonl(path: str, parse):
    if not os.path.exists(path):
        return []
    rows = []
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(parse(json.loads(line)))
            except (KeyError, TypeError, ValueError):
                log.debug("skipping corrupt line in %s: %r", path, line[:120])
    return rows


def append_history(entry: HistoryEntry, path: str | None = None):
    _append_jsonl(path or HISTORY_FILE, entry.to_json())


def read_history(since: datetime | None = None, path: str | None = None) -> list[HistoryEntry]:
    entries = _read_jsonl(path or HISTORY_FILE, HistoryEntry.from_json)
    if since is not None:
        entries = [e for e in entries if e.ts >= since]
    return entries


def last_history_entry(path: str | None = None) -> HistoryEntry | None:
    """Last recorded entry (bootstraps rollover detection after a restart)."""
    entries = read_history(path=path)
    return entries[-1] if entries else None


def _entries_for_window(entries: list[HistoryEntry], resets_at: datetime,
                        is_five_hour: bool) -> list[HistoryEntry]:
    return [e for e in entries if dates_match(e.resets_at(is_five_hour), resets_at)]


def read_history_for_window(resets_at: datetime, is_five_hour: bool,
                            since: datetime | None = None,
                            path: str | None = None) -> list[HistoryEntry]:
    """Entries belonging to one window cycle, matched by resets_at."""
    return _entries_for_window(read_history(since, path), resets_at, is_five_hour)


def prune_history(max_days: int = HISTORY_MAX_DAYS, now: datetime | None = None,
                  path: str | None = None) -> int:
    """Drop entries older than `max_days` (atomic rewrite). Returns entries kept."""
    path = path or HISTORY_FILE
    if not os.path.exists(path):
        return 0
    cutoff = (now or _utcnow()) - timedelta(days=max_days)
    entries = read_history(since=cutoff, path=path)
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        for e in entries:
            f.write(json.dumps(e.to_json()) + "\n")
    os.replace(tmp, path)
    log.info("Pruned history to %d entries", len(entries))
    return len(entries)


def append_window_summary(summary: WindowSummary, path: str | None = None):
    _append_jsonl(path or WINDOWS_FILE, summary.to_json())


def read_window_summaries(path: str | None = None) -> list[WindowSummary]:
    return _read_jsonl(path or WINDOWS_FILE, WindowSummary.from_json)


def last_window_summary(window_type: str, path: str | None = None) -> WindowSummary | None:
    matching = [s for s in read_window_summaries(path) if s.window_type == window_type]
    return matching[-1] if matching else None


def recent_lock_count(days: int = 7, now: datetime | None = None,
                      summaries: list[WindowSummary] | None = None) -> int:
    cutoff = (now or _utcnow()) - timedelta(days=days)
    if summaries is None:
        summaries = read_window_summaries()
    return sum(1 for s in summaries if s.was_locked and s.closed_at > cutoff)


# ── window rollover ───────────────────────────────────────────────────────────

WINDOW_5H = "5-hour"
WINDOW_7D = "7-day"


def summarize_window(entries: list[HistoryEntry], window_type: str,
                     resets_at: datetime, now: datetime | None = None) -> WindowSummary | None:
    """Aggregate one closed cycle. None when there is nothing worth keeping."""
    if not entries:
        return None
    now = now or _utcnow()
    is_five_hour = window_type == WINDOW_5H
    duration = FIVE_HOUR if is_five_hour else SEVEN_DAY
    ordered = sorted(entries, key=lambda e: e.ts)
    peak = max(e.util(is_five_hour) for e in ordered)
    if peak <= 0:
        return None

    window_start = resets_at - timedelta(seconds=duration)
    hours = (ordered[-1].ts - window_start).total_seconds() / 3600
    return WindowSummary(
        closed_at=min(resets_at, now),
        window_type=window_type,
        peak_utilization=peak,
        avg_rate=peak / hours if hours > 0 else 0.0,
        entry_count=len(ordered),
        was_locked=peak >= 1.0,
    )


def detect_rollovers(previous: HistoryEntry | None, quota: QuotaData,
                     history: list[HistoryEntry] | None = None,
                     now: datetime | None = None) -> list[WindowSummary]:
    """Summaries for every window whose resets_at moved since `previous`."""
    if previous is None:
        return []
    if history is None:
        history = read_history()
    now = now or quota.fetched_at

    summaries = []
    for window_type, is_five_hour, window in (
        (WINDOW_5H, True, quota.five_hour),
        (WINDOW_7D, False, quota.seven_day),
    ):
        prev_reset = previous.resets_at(is_five_hour)
        if dates_match(prev_reset, window.resets_at):
            continue
        cycle = _entries_for_window(history, prev_reset, is_five_hour)
        summary = summarize_window(cycle, window_type, prev_reset, now)
        if summary is not None:
            log.info("%s window closed: peak %.0f%% over %d entries",
                     window_type, summary.peak_utilization * 100, summary.entry_count)
            summaries.append(summary)
    return summaries


# ── shepherd state ────────────────────────────────────────────────────────────

STATE_CALM = "calm"
STATE_TRAJECTORY = "trajectory"   # projected ≥ 70%, util < 70%
STATE_WARM = "warm"               # util 70–89%
STATE_LOW = "low"                 # util 90–99% or projected ≥ 90%
STATE_LOCKED = "locked"

_STATE_SEVERITY = {
    STATE_CALM: 0, STATE_TRAJECTORY: 1, STATE_WARM: 2, STATE_LOW: 3, STATE_LOCKED: 4,
}


def shepherd_state(window: QuotaWindow, pace: PaceInfo | None,
                   projected: float | None, now: datetime | None = None) -> str:
    # An expired window is stale data, not a warning.
    if window.seconds_to_reset(now) <= 0:
        return STATE_CALM
    if window.is_locked:
        return STATE_LOCKED
    util = window.utilization
    if util >= LOW_UTIL:
        return STATE_LOW
    if projected is not None and projected >= LOW_UTIL:
        return STATE_LOW
    if util >= WARM_UTIL:
        return STATE_WARM
    if pace is not None and pace.show_warning:
        return STATE_TRAJECTORY
    if projected is not None and projected >= WARM_UTIL:
        return STATE_TRAJECTORY
    return STATE_CALM


def worst_state(*states: str) -> str:
    return max(states, key=_STATE_SEVERITY.__getitem__, default=STATE_CALM)


# ── alerts ────────────────────────────────────────────────────────────────────

THRESHOLD_PACE = 1
THRESHOLD_LOW = 2
THRESHOLD_LOCKED = 3

_THRESHOLD_KEYS = {THRESHOLD_PACE: "pace", THRESHOLD_LOW: "low", THRESHOLD_LOCKED: "locked"}


@dataclass
class Alert:
    id: str
    title: str
    body: str


@dataclass
class _WindowAlertState:
    resets_at: datetime
    was_locked: bool
    highest: int | None = None


class AlertTracker:
    """Threshold alerts, at most one per threshold level per window cycle."""

    def __init__(self, config: dict | None = None):
        self.config = config if config is not None else {}
        self._states: dict[str, _WindowAlertState] = {}

    def evaluate(self, quota: QuotaData, now: datetime | None = None) -> list[Alert]:
        now = now or _utcnow()
        alerts = []
        for wid, label, window, duration in (
            ("five-hour", WINDOW_5H, quota.five_hour, FIVE_HOUR),
            ("seven-day", WINDOW_7D, quota.seven_day, SEVEN_DAY),
        ):
            pace = calc_pace(window, duration, now)
            alerts.extend(self._evaluate_window(wid, label, window, pace, now))
        for a in alerts:
            log.info("alert %s: %s", a.id, a.body)
        return alerts

    def _evaluate_window(self, wid: str, label: str, window: QuotaWindow,
                         pace: PaceInfo | None, now: datetime) -> list[Alert]:
        alerts = []
        state = self._states.get(wid)

        if state is not None and not dates_match(state.resets_at, window.resets_at):
            if state.was_locked and not window.is_locked:
                self._emit(alerts, "restored", f"{wid}-restored", "Quota restored.")
            state = None

        if state is None:
            state = _WindowAlertState(resets_at=window.resets_at, was_locked=window.is_locked)
            self._states[wid] = state
        state.was_locked = window.is_locked

        if window.is_locked:
            threshold = THRESHOLD_LOCKED
        elif window.utilization >= LOW_UTIL:
            threshold = THRESHOLD_LOW
        elif pace is not None and pace.show_warning and window.utilization > PACE_ALERT_MIN_UTIL:
            threshold = THRESHOLD_PACE
        else:
            return alerts

        if state.highest is not None and threshold <= state.highest:
            return alerts
        state.highest = threshold

        resets_in = window.resets_in(now)
        if threshold == THRESHOLD_PACE:
            body = (f"At current pace, {label} limit around {fmt_time(pace.limit_at, now)}. "
                    f"Resets in {resets_in}.")
            self._emit(alerts, "pace", f"{wid}-pace", body)
        elif threshold == THRESHOLD_LOW:
            body = f"{label.capitalize()} window at 90%. Resets in {resets_in}."
            self._emit(alerts, "low", f"{wid}-low", body)
        else:
            body = f"Limit reached. Back at {fmt_time(window.resets_at, now)}."
            self._emit(alerts, "locked", f"{wid}-locked", body)
        return alerts

    def _emit(self, alerts: list[Alert], kind: str, aid: str, body: str):
        if _notif_enabled(self.config, kind):
            alerts.append(Alert(aid, "TokenShepherd", body))


# ── local token stats ─────────────────────────────────────────────────────────

def token_summary(path: str | None = None, today: date | None = None) -> TokenSummary | None:
    """Token counts from Claude Code's ~/.claude/stats-cache.json (no network)."""
    path = path or STATS_CACHE_FILE
    if not os.path.exists(path):
        return None
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        log.debug("token_summary failed: %s", e)
        return None
    if not isinstance(data, dict):
        return None

    today = today or date.today()
    yesterday = today - timedelta(days=1)
    week_start = today - timedelta(days=6)
    counts = {"today": 0, "yesterday": 0, "week": 0}
    opus = sonnet = 0

    for entry in data.get("dailyModelTokens") or []:
        try:
            day = date.fromisoformat(entry["date"])
            by_model = entry.get("tokensByModel") or {}
        except (KeyError, TypeError, ValueError, AttributeError):
            continue
        if day < week_start or day > today:
            continue
        for model, n in by_model.items():
            if not isinstance(n, (int, float)) or isinstance(n, bool):
                continue
            n = int(n)
            counts["week"] += n
            if day == today:
                counts["today"] += n
            elif day == yesterday:
                counts["yesterday"] += n
            name = model.lower()
            if "opus" in name:
                opus += n
            elif "sonnet" in name:
                sonnet += n

    dominant = None
    if opus + sonnet > 0:
        dominant = "Opus" if opus >= sonnet else "Sonnet"
    return TokenSummary(counts["today"], counts["yesterday"], counts["week"], dominant)


# ── service ───────────────────────────────────────────────────────────────────

class QuotaService:
    """Owns the quota state; one fetch at a time, stale results dropped."""

    def __init__(self, config: dict | None = None, on_alert=None):
        self.config = config if config is not None else load_config()
        self.state = QuotaState()
        self.credentials: OAuthCredentials | None = None
        self.alerts = AlertTracker(self.config)
        self.on_alert = on_alert
        self.last_raw: dict = {}
        self._fetching = False
        self._generation = 0
        self._lock = threading.Lock()

    # ── fetch ─────────────────────────────────────────────────────────────────

    def refresh(self, force: bool = False, now: datetime | None = None) -> QuotaState:
        now = now or _utcnow()
        with self._lock:
            if self._fetching and not force:
                return self.state
            data = self.state.data
            if (not force and data is not None
                    and (now - data.fetched_at).total_seconds() < MIN_REFRESH_INTERVAL):
                return self.state
            # Keep showing stale data while refreshing.
            if data is None:
                self.state = QuotaState()
            self._fetching = True
            self._generation += 1
            generation = self._generation

        alerts = []
        try:
            result, raw = self._fetch(now)
            with self._lock:
                if generation != self._generation:
                    log.debug("dropping result of superseded fetch #%d", generation)
                    return self.state
                # Side effects only for the fetch that still owns the state.
                if result.data is not None:
                    self.last_raw = raw
                    self._record(result.data)
                    alerts = self.alerts.evaluate(result.data, now)
                self.state = result
        finally:
            with self._lock:
                if generation == self._generation:
                    self._fetching = False

        if self.on_alert is not None:
            for a in alerts:
                self.on_alert(a)
        return result

    def schedule_refresh(self, force: bool = False) -> threading.Thread:
        t = threading.Thread(target=self.refresh, kwargs={"force": force}, daemon=True)
        t.start()
        return t

    def _active_credentials(self, force_refresh: bool = False) -> OAuthCredentials:
        path = _credentials_path(self.config)
        creds = load_credentials(path)
        if force_refresh or creds.is_expired():
            creds = refresh_access_token(creds, path)
        self.credentials = creds
        return creds

    def _fetch(self, now: datetime) -> tuple[QuotaState, dict]:
        """Credentials → API → parse. No history or alert side effects."""
        try:
            creds = self._active_credentials()
            try:
                raw = fetch_quota(creds.access_token)
            except QuotaAPIError as e:
                if e.status != 401:
                    raise
                log.warning("quota API rejected the token, refreshing once")
                creds = self._active_credentials(force_refresh=True)
                raw = fetch_quota(creds.access_token)
            quota = parse_quota(raw, fetched_at=now)
        except ShepherdError as e:
            log.error("fetch failed: %s", e)
            return QuotaState(error=str(e)), {}
        except Exception:
            log.exception("fetch failed")
            return QuotaState(error=f"Unexpected error, see {LOG_FILE}"), {}
        return QuotaState(data=quota), raw

    def _record(self, quota: QuotaData):
        try:
            history = read_history()
            previous = history[-1] if history else None
            for summary in detect_rollovers(previous, quota, history=history):
                append_window_summary(summary)
            append_history(HistoryEntry.from_quota(quota))
        except (OSError, ValueError):
            log.exception("history write failed")

    # ── loop ──────────────────────────────────────────────────────────────────

    def run(self, interval: float | None = None, on_update=None,
            stop_event: threading.Event | None = None):
        """Timer loop: refresh, report, sleep. Errors retry on the next tick."""
        interval = interval or self.config.get("refresh_interval", DEFAULT_REFRESH)
        stop_event = stop_event or threading.Event()
        try:
            prune_history(self.config.get("history_max_days", HISTORY_MAX_DAYS))
        except OSError:
            log.exception("startup prune failed")
        while not stop_event.is_set():
            state = self.refresh()
            if on_update is not None:
                on_update(state)
            stop_event.wait(interval)


# ── view ──────────────────────────────────────────────────────────────────────

def _window_view(label: str, window: QuotaWindow, duration: int,
                 entries: list[HistoryEntry], is_five_hour: bool, now: datetime) -> dict:
    pace = calc_pace(window, duration, now)
    projected = projected_at_reset(window, duration, now)
    trend = calc_trend(entries, is_five_hour, now=now)
    return {
        "label": label,
        "utilization": window.utilization,
        "resets_at": fmt_iso(window.resets_at),
        "resets_at_local": fmt_time(window.resets_at, now),
        "resets_in": window.resets_in(now),
        "expired": window.seconds_to_reset(now) <= 0,
        "locked": window.is_locked,
        "projected": projected,
        "pace": None if pace is None else {
            "time_to_limit": pace.time_to_limit,
            "time_to_reset": pace.time_to_reset,
            "show_warning": pace.show_warning,
            "limit_in": pace.time_to_limit_formatted,
        },
        "trend": None if trend is None else {
            "velocity_per_hour": trend.velocity_per_hour,
            "recent_delta": trend.recent_delta,
        },
        "state": shepherd_state(window, pace, projected, now),
    }


def build_view(quota: QuotaData, entries: list[HistoryEntry] | None = None,
               summaries: list[WindowSummary] | None = None,
               tokens: TokenSummary | None = None,
               credentials: OAuthCredentials | None = None,
               now: datetime | None = None) -> dict:
    """Everything the status screen shows, as plain JSON-able values."""
    now = now or _utcnow()
    entries = entries or []
    five = _window_view("5h", quota.five_hour, FIVE_HOUR, entries, True, now)
    seven = _window_view("7d", quota.seven_day, SEVEN_DAY, entries, False, now)

    binding = quota.binding_window
    is_five_hour = binding is quota.five_hour
    cycle = _entries_for_window(entries, binding.resets_at, is_five_hour)
    window_start = binding.resets_at - timedelta(seconds=quota.binding_window_duration)
    buckets = sparkline_buckets(cycle, is_five_hour, window_start, now)

    sonnet = quota.seven_day_sonnet
    extra = quota.extra_usage
    return {
        "fetched_at": fmt_iso(quota.fetched_at),
        "subscription": credentials.subscription_type if credentials else None,
        "state": worst_state(five["state"], seven["state"]),
        "windows": {"five_hour": five, "seven_day": seven},
        "sonnet": None if sonnet is None else {
            "utilization": sonnet.utilization, "resets_in": sonnet.resets_in(now),
        },
        "extra_usage": {
            "monthly_limit": extra.monthly_limit, "used_credits": extra.used_credits,
        } if extra.is_enabled else None,
        "sparkline": buckets,
        "tokens": None if tokens is None else {
            "today": tokens.today, "yesterday": tokens.yesterday,
            "last_7_days": tokens.last_7_days, "dominant_model": tokens.dominant_model,
        },
        "locked_last_7d": recent_lock_count(now=now, summaries=summaries or []),
    }


# ── display helpers ───────────────────────────────────────────────────────────

_RESET = "\033[0m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_STATE_COLORS = {
    STATE_CALM: "\033[32m",          # green
    STATE_TRAJECTORY: "\033[33m",    # orange-ish
    STATE_WARM: "\033[33m",
    STATE_LOW: "\033[31m",           # red
    STATE_LOCKED: "\033[31m",
}
_STATE_ICONS = {
    STATE_CALM: "🟢", STATE_TRAJECTORY: "🟡", STATE_WARM: "🟡",
    STATE_LOW: "🔴", STATE_LOCKED: "🔒",
}


def _use_color(stream=None) -> bool:
    stream = stream or sys.stdout
    if os.environ.get("NO_COLOR"):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class _Paint:
    def __init__(self, enabled: bool):
        self.enabled = enabled

    def __call__(self, text: str, *codes: str) -> str:
        if not self.enabled or not codes:
            return text
        return "".join(codes) + text + _RESET


def _bar(util: float, width: int = 20) -> str:
    filled = round(util * width)
    return "█" * filled + "░" * (width - filled)


def _pct(util: float) -> str:
    return f"{int(util * 100)}%"


def _window_cell(w: dict, paint: _Paint) -> list[str]:
    color = _STATE_COLORS[w["state"]]
    head = paint(w["label"], _DIM)
    if w["expired"]:
        return [head, paint("—", _DIM), paint("reset", _DIM)]
    if w["locked"]:
        return [head, paint("100% LOCKED", _BOLD, color),
                paint(f"back {w['resets_at_local']}", color)]
    proj = w["projected"]
    if proj is not None and proj >= WARM_UTIL and int(proj * 100) > int(w["utilization"] * 100) + 5:
        pace_line = paint(f"~{int(proj * 100)}% pace", _STATE_COLORS[STATE_LOW if proj >= LOW_UTIL else STATE_WARM])
    else:
        pace_line = paint("—", _DIM)
    util_line = paint(_pct(w["utilization"]), _BOLD, color) + "  " + _bar(w["utilization"], 14)
    return [head, util_line, pace_line, paint(f"resets {w['resets_at_local']} ({w['resets_in']})", _DIM)]


def render_status(view: dict, color: bool = False) -> str:
    paint = _Paint(color)
    lines = []
    title = f"🐑 {_STATE_ICONS[view['state']]}  " + paint("TokenShepherd", _BOLD)
    if view.get("subscription"):
        title += paint(f" ({view['subscription']})", _DIM)
    lines.append(title)
    tokens = view.get("tokens")
    if tokens and tokens.get("dominant_model"):
        lines.append(paint(f"  model: {tokens['dominant_model']}", _DIM))
    lines.append("")

    five, seven = view["windows"]["five_hour"], view["windows"]["seven_day"]
    if five["expired"] and seven["expired"]:
        lines.append(paint("  All clear", _BOLD))
        lines.append(paint("  Quota just reset", _DIM))
    else:
        for w in (five, seven):
            cell = _window_cell(w, paint)
            lines.append("  " + cell[0])
            lines.extend("    " + c for c in cell[1:])
            pace = w["pace"]
            if pace and pace["show_warning"] and not w["locked"]:
                lines.append("    " + paint(f"limit in {pace['limit_in']}", _STATE_COLORS[STATE_LOW]))
            lines.append("")

        spark = render_sparkline(view["sparkline"])
        if spark and not five["locked"] and not seven["locked"]:
            lines.append("  " + paint(spark, _STATE_COLORS[view["state"]]))
            lines.append("")

    details = []
    sonnet = view.get("sonnet")
    if sonnet and sonnet["utilization"] > 0:
        details.append(("Sonnet 7d", _pct(sonnet["utilization"])))
    extra = view.get("extra_usage")
    if extra:
        if extra["used_credits"] is not None and extra["monthly_limit"] is not None:
            details.append(("Extra usage", f"${extra['used_credits']:.2f} / ${extra['monthly_limit']:.2f}"))
        else:
            details.append(("Extra usage", "enabled"))
    if tokens and tokens["last_7_days"] > 0:
        if tokens["today"] > 0:
            details.append(("Today", fmt_token_count(tokens["today"])))
        if tokens["yesterday"] > 0:
            details.append(("Yesterday", fmt_token_count(tokens["yesterday"])))
        details.append(("Last 7 days", fmt_token_count(tokens["last_7_days"])))
    if view.get("locked_last_7d"):
        details.append(("Locked (7d)", f"{view['locked_last_7d']}×"))
    for label, value in details:
        lines.append(f"  {paint(f'{label:<12}', _DIM)} {value}")
    if details:
        lines.append("")

    lines.append(paint("  Reads quota data only. Never consumes tokens.", _DIM))
    return "\n".join(lines)


def status_line(state: QuotaState, now: datetime | None = None) -> str:
    """Compact one-liner for the watch loop (what the menu bar title showed)."""
    now = now or _utcnow()
    if state.is_loading:
        return "🐑 …"
    if state.error:
        return f"🐑 ! {state.error}"
    quota = state.data
    parts, states = [], []
    for label, window, duration in (("5h", quota.five_hour, FIVE_HOUR),
                                    ("7d", quota.seven_day, SEVEN_DAY)):
        pace = calc_pace(window, duration, now)
        projected = projected_at_reset(window, duration, now)
        states.append(shepherd_state(window, pace, projected, now))
        parts.append(f"{label} {_pct(window.utilization)} ({window.resets_in(now)})")
    icon = _STATE_ICONS[worst_state(*states)]
    return f"🐑 {icon}  " + "  ·  ".join(parts)


def render_history(entries: list[HistoryEntry], summaries: list[WindowSummary],
                   now: datetime | None = None, color: bool = False) -> str:
    now = now or _utcnow()
    paint = _Paint(color)
    lines = [paint("  TokenShepherd usage history", _BOLD), ""]
    if not entries:
        lines.append("  No history data yet. Run `tokenshepherd watch` for a while first.")
        return "\n".join(lines)

    last = entries[-1]
    for label, is_five_hour, duration in (("5-hour", True, FIVE_HOUR), ("7-day", False, SEVEN_DAY)):
        resets_at = last.resets_at(is_five_hour)
        cycle = _entries_for_window(entries, resets_at, is_five_hour)
        start = resets_at - timedelta(seconds=duration)
        spark = render_sparkline(sparkline_buckets(cycle, is_five_hour, start, min(now, resets_at)))
        lines.append(f"  {paint(label, _BOLD)}  {_pct(last.util(is_five_hour))}  {spark}")
        trend = calc_trend(entries, is_five_hour, now=now)
        if trend is not None:
            lines.append(paint(f"    {trend.velocity_per_hour * 100:+.1f}%/h over the last "
                               f"{int(trend.span_seconds // 60)} min", _DIM))
        lines.append("")

    if summaries:
        lines.append(paint("  Closed windows", _BOLD))
        for s in summaries[-10:]:
            mark = " ⚠ locked" if s.was_locked else ""
            lines.append(f"    {fmt_time(s.closed_at, now):<18} {s.window_type:<7} "
                         f"peak {_pct(s.peak_utilization):>4}  "
                         f"{s.avg_rate * 100:.1f}%/h  ({s.entry_count} samples){mark}")
    return "\n".join(lines)


# ── CLI ───────────────────────────────────────────────────────────────────────

def _cmd_status(args, cfg: dict) -> int:
    service = QuotaService(cfg)
    state = service.refresh(force=True)
    if state.error:
        print(f"Error: {state.error}", file=sys.stderr)
        if "401" in state.error or "refresh failed" in state.error:
            print('Run Claude Code once to refresh:  claude --print "hi"', file=sys.stderr)
        return 1
    if args.raw:
        print(json.dumps(service.last_raw, indent=2))
        return 0
    view = build_view(
        state.data,
        entries=read_history(),
        summaries=read_window_summaries(),
        tokens=token_summary(),
        credentials=service.credentials,
    )
    if args.json:
        print(json.dumps(view, indent=2))
    else:
        print("\n" + render_status(view, color=_use_color()) + "\n")
    return 0


def _cmd_watch(args, cfg: dict) -> int:
    def on_alert(alert: Alert):
        print(f"⏱  {alert.body}", flush=True)

    def on_update(state: QuotaState):
        stamp = datetime.now().strftime("%H:%M")
        print(f"[{stamp}] {status_line(state)}", flush=True)

    service = QuotaService(cfg, on_alert=on_alert)
    try:
        service.run(interval=args.interval, on_update=on_update)
    except KeyboardInterrupt:
        pass
    return 0


def _cmd_history(args, cfg: dict) -> int:
    since = datetime.now(timezone.utc) - timedelta(hours=args.hours) if args.hours else None
    print(render_history(read_history(since), read_window_summaries(), color=_use_color()))
    return 0


def _cmd_prune(args, cfg: dict) -> int:
    kept = prune_history(cfg.get("history_max_days", HISTORY_MAX_DAYS))
    print(f"History pruned, {kept} entries kept.")
    return 0


def _cmd_config(args, cfg: dict) -> int:
    if args.key is None:
        print(json.dumps(cfg, indent=2))
        return 0
    if args.value is None:
        node = cfg
        for part in args.key.split("."):
            node = node.get(part) if isinstance(node, dict) else None
        print(json.dumps(node))
        return 0
    try:
        set_config_value(cfg, args.key, args.value)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokenshepherd",
        description="TokenShepherd - real-time Claude Code quota monitoring",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.set_defaults(func=_cmd_status, raw=False, json=False)
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("status", help="show current quota status and pace prediction")
    p.add_argument("-r", "--raw", action="store_true", help="print the raw API JSON")
    p.add_argument("--json", action="store_true", help="print the computed view as JSON")
    p.set_defaults(func=_cmd_status)

    p = sub.add_parser("watch", help="poll continuously and print alerts")
    p.add_argument("-i", "--interval", type=int, default=None,
                   help=f"seconds between polls (default {DEFAULT_REFRESH})")
    p.set_defaults(func=_cmd_watch)

    p = sub.add_parser("history", help="trend, sparkline and closed windows")
    p.add_argument("--hours", type=float, default=None, help="only look back this many hours")
    p.set_defaults(func=_cmd_history)

    p = sub.add_parser("prune", help="drop history older than the retention period")
    p.set_defaults(func=_cmd_prune)

    p = sub.add_parser("config", help="show or set configuration")
    p.add_argument("key", nargs="?")
    p.add_argument("value", nargs="?")
    p.set_defaults(func=_cmd_config)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    return args.func(args, load_config())


if __name__ == "__main__":
    sys.exit(main())
