"""Rate-budget checks for the agent CLIs.

Each agent has a short list of status sources tried in priority order. The
first source that returns a ``BudgetStatus`` wins. ``BudgetGatekeeper``
turns a status into a go/no-go decision for a refactoring scope and can wait
(sleep until reset, then poll) for the budget to come back.
"""

import json
import logging
import platform
import shutil
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import Protocol

import httpx

from review_loop.retry import Clock, SystemClock
from review_loop.utils import format_duration, run_command

OAUTH_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
OAUTH_BETA_HEADER = "oauth-2025-04-20"
KEYCHAIN_SERVICE = "Claude Code-credentials"
HTTP_TIMEOUT = 10.0

LOCAL_WINDOW = timedelta(hours=5)
TIER_TOKEN_LIMITS = {"pro": 1_000_000, "max5": 5_000_000, "max20": 20_000_000}
_TIER_NAMES = {"default_claude_max_20x": "max20", "default_claude_max_5x": "max5"}

CODEX_LOOKBACK_DAYS = 7

# Percent used must stay below the threshold; None means "no limit".
SCOPE_THRESHOLDS: dict[str, int | None] = {"micro": 90, "module": 75, "layer": None, "full": None}

RESET_BUFFER_SECONDS = 10
POLL_INITIAL_INTERVAL = 30
POLL_MAX_INTERVAL = 120


class Agent(StrEnum):
    """The two agent CLIs whose budget is tracked."""

    EDITOR = "claude"
    REVIEWER = "codex"


class BudgetMode(StrEnum):
    """Where a budget reading came from."""

    OAUTH = "oauth"
    LOCAL_ESTIMATE = "local-estimate"
    SESSION_LOG = "session-log"
    NO_DATA = "no-data"


@dataclass(frozen=True)
class BudgetStatus:
    """Point-in-time usage reading for one agent."""

    five_hour_used_pct: int | None
    seven_day_used_pct: int | None
    mode: BudgetMode
    tier: str = "unknown"
    resets_at: datetime | None = None
    seven_day_resets_at: datetime | None = None
    estimated: bool = False
    tokens_used: int = 0


class BudgetSource(Protocol):
    """Anything that can produce a budget reading."""

    def fetch(self) -> BudgetStatus | None:
        """Return a reading, or None when this source has no data."""
        ...


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 string or epoch number into an aware UTC datetime.

    Args:
        value: Raw timestamp from a JSON payload

    Returns:
        Parsed datetime, or None if the value is missing or malformed

    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def seconds_until(target: datetime, now: datetime) -> int:
    """Return whole seconds from ``now`` until ``target`` (0 if already past)."""
    return max(0, int((target - now).total_seconds()))


def _iter_json_values(path: Path) -> Iterator[dict]:
    """Yield JSON objects from a file holding one document or JSON lines."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        document = None
    if isinstance(document, dict):
        yield document
        return
    if isinstance(document, list):
        yield from (item for item in document if isinstance(item, dict))
        return
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            yield value


def detect_claude_tier(home: Path) -> str:
    """Return the subscription tier recorded in the newest telemetry event.

    Args:
        home: User home directory

    Returns:
        One of "pro", "max5" or "max20"

    """
    telemetry_dir = home / ".claude" / "telemetry"
    newest: tuple[str, str] | None = None
    if telemetry_dir.is_dir():
        for path in sorted(telemetry_dir.glob("*.json")):
            for record in _iter_json_values(path):
                event_data = record.get("event_data")
                if not isinstance(event_data, dict):
                    continue
                attributes = event_data.get("user_attributes")
                if isinstance(attributes, str):
                    try:
                        attributes = json.loads(attributes)
                    except json.JSONDecodeError:
                        continue
                if not isinstance(attributes, dict) or not attributes.get("rateLimitTier"):
                    continue
                stamp = str(event_data.get("client_timestamp") or "")
                if newest is None or stamp >= newest[0]:
                    newest = (stamp, str(attributes["rateLimitTier"]))

    if newest is None:
        return "pro"
    return _TIER_NAMES.get(newest[1], "pro")


class ClaudeOAuthSource:
    """Authoritative usage report from the Anthropic OAuth usage endpoint."""

    def __init__(
        self,
        logger: logging.Logger,
        home: Path | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            logger: Logger instance for output
            home: User home directory (defaults to ``Path.home()``)
            client: HTTP client to use (a short-lived one is created otherwise)

        """
        self.logger = logger
        self.home = home or Path.home()
        self.client = client

    def read_access_token(self) -> str | None:
        """Return the OAuth access token from the credentials file or keychain."""
        credentials = self.home / ".claude" / ".credentials.json"
        if credentials.is_file():
            try:
                data = json.loads(credentials.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                data = {}
            token = (data.get("claudeAiOauth") or {}).get("accessToken")
            if token:
                return str(token)

        if platform.system() == "Darwin" and shutil.which("security"):
            returncode, stdout, _ = run_command(
                ["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"],
            )
            if returncode == 0 and stdout.strip():
                try:
                    data = json.loads(stdout)
                except json.JSONDecodeError:
                    return None
                token = (data.get("claudeAiOauth") or {}).get("accessToken")
                return str(token) if token else None

        return None

    def fetch(self) -> BudgetStatus | None:
        """Query the usage endpoint."""
        token = self.read_access_token()
        if not token:
            return None

        headers = {
            "Authorization": f"Bearer {token}",
            "anthropic-beta": OAUTH_BETA_HEADER,
            "Accept": "application/json",
        }
        try:
            if self.client is not None:
                response = self.client.get(OAUTH_USAGE_URL, headers=headers, timeout=HTTP_TIMEOUT)
            else:
                with httpx.Client(timeout=HTTP_TIMEOUT) as client:
                    response = client.get(OAUTH_USAGE_URL, headers=headers)
        except httpx.HTTPError as exc:
            self.logger.debug("OAuth usage request failed: %s", exc)
            return None

        if response.status_code != httpx.codes.OK:
            self.logger.debug("OAuth usage request returned HTTP %s", response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            return None

        five_hour = data.get("five_hour") or {}
        seven_day = data.get("seven_day") or {}
        if five_hour.get("utilization") is None:
            return None

        seven_day_pct = seven_day.get("utilization")
        return BudgetStatus(
            five_hour_used_pct=round(float(five_hour["utilization"])),
            seven_day_used_pct=None if seven_day_pct is None else round(float(seven_day_pct)),
            mode=BudgetMode.OAUTH,
            tier=detect_claude_tier(self.home),
            resets_at=parse_timestamp(five_hour.get("resets_at")),
            seven_day_resets_at=parse_timestamp(seven_day.get("resets_at")),
        )


class ClaudeLocalEstimateSource:
    """Estimate usage from local session transcripts.

    Sums the token usage of assistant messages written in the last five
    hours and divides by the capacity of the detected tier. Streaming writes
    the same message several times, so only the last record per message id
    counts.
    """

    def __init__(self, home: Path | None = None, clock: Clock | None = None) -> None:
        self.home = home or Path.home()
        self.clock = clock or SystemClock()

    def fetch(self) -> BudgetStatus:
        """Return an estimate (never None)."""
        now = self.clock.wall_time()
        cutoff = now - LOCAL_WINDOW
        tier = detect_claude_tier(self.home)
        tokens = self.count_tokens(cutoff)
        limit = TIER_TOKEN_LIMITS[tier]

        return BudgetStatus(
            five_hour_used_pct=tokens * 100 // limit,
            seven_day_used_pct=None,
            mode=BudgetMode.LOCAL_ESTIMATE,
            tier=tier,
            estimated=True,
            tokens_used=tokens,
        )

    def count_tokens(self, cutoff: datetime) -> int:
        """Sum tokens of assistant messages newer than ``cutoff``."""
        projects_dir = self.home / ".claude" / "projects"
        if not projects_dir.is_dir():
            return 0

        cutoff_epoch = cutoff.timestamp()
        usage_by_message: dict[str, dict] = {}
        # Streaming updates repeat an id; records without one are counted individually.
        unidentified: list[dict] = []
        for path in sorted(projects_dir.rglob("*.jsonl")):
            try:
                if path.stat().st_mtime < cutoff_epoch:
                    continue
            except OSError:
                continue
            for record in _iter_json_values(path):
                if record.get("type") != "assistant":
                    continue
                stamp = parse_timestamp(record.get("timestamp"))
                if stamp is None or stamp < cutoff:
                    continue
                message = record.get("message")
                if not isinstance(message, dict) or not isinstance(message.get("usage"), dict):
                    continue
                if message.get("id"):
                    usage_by_message[str(message["id"])] = message["usage"]
                else:
                    unidentified.append(message["usage"])

        return sum(
            int(usage.get("input_tokens") or 0)
            + int(usage.get("output_tokens") or 0)
            + int(usage.get("cache_creation_input_tokens") or 0)
            + int(usage.get("cache_read_input_tokens") or 0)
            for usage in [*usage_by_message.values(), *unidentified]
        )


class CodexSessionLogSource:
    """Exact rate-limit percentages from the newest Codex session log."""

    def __init__(self, home: Path | None = None, clock: Clock | None = None) -> None:
        self.home = home or Path.home()
        self.clock = clock or SystemClock()

    def session_files(self) -> Iterator[Path]:
        """Yield session logs, newest day first and newest file first within a day."""
        sessions_dir = self.home / ".codex" / "sessions"
        today = self.clock.wall_time().date()
        for offset in range(CODEX_LOOKBACK_DAYS):
            day = today - timedelta(days=offset)
            day_dir = sessions_dir / f"{day:%Y}" / f"{day:%m}" / f"{day:%d}"
            if day_dir.is_dir():
                yield from sorted(day_dir.glob("*.jsonl"), reverse=True)

    def fetch(self) -> BudgetStatus | None:
        """Return the last ``token_count`` reading, or None if there is none."""
        for path in self.session_files():
            rate_limits = None
            for record in _iter_json_values(path):
                payload = record.get("payload")
                if not isinstance(payload, dict) or record.get("type") != "event_msg":
                    continue
                if payload.get("type") == "token_count":
                    limits = payload.get("rate_limits")
                    rate_limits = limits if isinstance(limits, dict) else {}
            if rate_limits is not None:
                return self._status_from(rate_limits)
        return None

    def _status_from(self, rate_limits: dict) -> BudgetStatus:
        now = self.clock.wall_time()
        five_pct, five_reset = self._window(rate_limits.get("primary"), now)
        seven_pct, seven_reset = self._window(rate_limits.get("secondary"), now)
        return BudgetStatus(
            five_hour_used_pct=five_pct,
            seven_day_used_pct=seven_pct,
            mode=BudgetMode.SESSION_LOG,
            resets_at=five_reset,
            seven_day_resets_at=seven_reset,
        )

    @staticmethod
    def _window(window: dict | None, now: datetime) -> tuple[int, datetime | None]:
        """Return (percent used, reset time) for one window; expired windows read as 0%."""
        if not isinstance(window, dict):
            return 0, None
        resets_at = parse_timestamp(window.get("resets_at"))
        if resets_at is not None and resets_at <= now:
            return 0, None
        return round(float(window.get("used_percent") or 0)), resets_at


class NoDataSource:
    """Last resort: report that nothing is known."""

    def fetch(self) -> BudgetStatus:
        """Return a status with unknown percentages."""
        return BudgetStatus(five_hour_used_pct=None, seven_day_used_pct=None, mode=BudgetMode.NO_DATA)


def default_sources(
    logger: logging.Logger,
    home: Path | None = None,
    clock: Clock | None = None,
) -> dict[Agent, list[BudgetSource]]:
    """Return the standard source chain for each agent."""
    return {
        Agent.EDITOR: [ClaudeOAuthSource(logger, home), ClaudeLocalEstimateSource(home, clock)],
        Agent.REVIEWER: [CodexSessionLogSource(home, clock), NoDataSource()],
    }


@dataclass
class PollSchedule:
    """Polling intervals for a budget wait: 30s, doubling up to 120s."""

    max_wait: float
    elapsed: float = 0
    interval: int = POLL_INITIAL_INTERVAL
    ceiling: int = POLL_MAX_INTERVAL

    def next_sleep(self) -> float:
        """Return the next poll delay clamped to the remaining budget (0 when done)."""
        return max(0, min(self.interval, self.max_wait - self.elapsed))

    def record(self, slept: float) -> None:
        """Account for a completed poll sleep."""
        self.elapsed += slept
        self.interval = min(self.interval * 2, self.ceiling)


def scope_threshold(scope: str) -> int | None:
    """Return the usage ceiling for ``scope``.

    Raises:
        ValueError: If the scope is unknown

    """
    if scope not in SCOPE_THRESHOLDS:
        message = f"Unknown budget scope '{scope}'. Expected one of: {', '.join(SCOPE_THRESHOLDS)}."
        raise ValueError(message)
    return SCOPE_THRESHOLDS[scope]


class BudgetGatekeeper:
    """Decide whether an agent call may proceed, and wait when it may not."""

    def __init__(
        self,
        logger: logging.Logger,
        sources: dict[Agent, list[BudgetSource]] | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the gatekeeper.

        Args:
            logger: Logger instance for output
            sources: Status sources per agent in priority order
            clock: Time source for waits

        """
        self.logger = logger
        self.clock = clock or SystemClock()
        self.sources = sources if sources is not None else default_sources(logger, clock=self.clock)

    def fetch(self, agent: Agent) -> BudgetStatus | None:
        """Return the first available reading for ``agent``."""
        for source in self.sources.get(agent, []):
            status = source.fetch()
            if status is not None:
                return status
        return None

    def sufficient(self, scope: str, status: BudgetStatus | None) -> bool:
        """Return whether ``status`` leaves enough room for ``scope``.

        Unavailable readings under a threshold scope are insufficient.

        Raises:
            ValueError: If the scope is unknown

        """
        threshold = scope_threshold(scope)
        if threshold is None:
            self.logger.warning(
                "Scope '%s' has no budget threshold; proceeding without a budget check.", scope
            )
            return True

        if status is None or status.five_hour_used_pct is None:
            self.logger.warning("Budget status unavailable; treating as insufficient.")
            return False

        return status.five_hour_used_pct < threshold

    def wait_for_budget(self, agent: Agent, scope: str, max_wait: float) -> bool:
        """Block until ``agent`` has budget for ``scope`` or ``max_wait`` runs out.

        Args:
            agent: Agent about to be called
            scope: Scope whose threshold applies
            max_wait: Maximum seconds to wait

        Returns:
            True when the budget is sufficient, False on timeout

        """
        if scope_threshold(scope) is None:
            return self.sufficient(scope, None)

        status = self.fetch(agent)
        if self.sufficient(scope, status):
            return True

        self.logger.warning("Budget insufficient for %s (scope: %s). Waiting for reset...", agent, scope)
        elapsed = 0

        if status is not None and status.resets_at is not None:
            wait = seconds_until(status.resets_at, self.clock.wall_time()) + RESET_BUFFER_SECONDS
            if wait <= max_wait:
                self.logger.info(
                    "Sleeping %s until budget reset (%s)...", format_duration(wait), status.resets_at
                )
                self.clock.sleep(wait)
                elapsed = wait
                if self.sufficient(scope, self.fetch(agent)):
                    self.logger.info("Budget restored for %s.", agent)
                    return True

        schedule = PollSchedule(max_wait=max_wait, elapsed=elapsed)
        while (delay := schedule.next_sleep()) > 0:
            self.logger.info(
                "Polling budget in %ss (%s/%ss elapsed)...", delay, schedule.elapsed, max_wait
            )
            self.clock.sleep(delay)
            schedule.record(delay)
            if self.sufficient(scope, self.fetch(agent)):
                self.logger.info("Budget restored for %s.", agent)
                return True

        self.logger.error("Budget wait timeout (%ss) for %s.", max_wait, agent)
        return False


def format_budget_report(agent: Agent, status: BudgetStatus | None, now: datetime) -> list[str]:
    """Render a human-readable budget report with a GO/NO-GO line per scope.

    Args:
        agent: Agent the status belongs to
        status: Reading to render (None when nothing is known)
        now: Current time, for reset countdowns

    Returns:
        Report lines

    """
    lines = [f"{agent} budget"]
    if status is None or status.five_hour_used_pct is None:
        lines.append("  5h window: unknown (no data)")
    else:
        suffix = " (estimated)" if status.estimated else ""
        lines.append(f"  Source: {status.mode} | Tier: {status.tier}")
        lines.append(f"  5h window: {status.five_hour_used_pct}% used{suffix}")
        if status.tokens_used:
            lines.append(f"  Tokens in window: {status.tokens_used:,}")
        if status.resets_at is not None:
            minutes = seconds_until(status.resets_at, now) // 60
            lines.append(f"  Resets in: {minutes // 60}h {minutes % 60}m")
        if status.seven_day_used_pct is not None:
            lines.append(f"  7d window: {status.seven_day_used_pct}% used")

    for scope, threshold in SCOPE_THRESHOLDS.items():
        if threshold is None:
            verdict = "GO (no threshold)"
        elif status is None or status.five_hour_used_pct is None:
            verdict = "NO-GO (no data)"
        elif status.five_hour_used_pct < threshold:
            verdict = f"GO (< {threshold}%)"
        else:
            verdict = f"NO-GO (>= {threshold}%)"
        lines.append(f"  {scope:<7} {verdict}")
    return lines
