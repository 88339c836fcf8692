#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "slack-sdk>=3.33",
#     "click>=8.0",
#     "rich>=13.0",
# ]
# ///
"""Slack Reader CLI: read-only terminal access to Slack workspaces.

Lists conversations, reads channel history and threads, and searches
messages across any number of workspaces. Each workspace is stored with
either a standard app token (xoxb-/xoxp-) or browser session credentials
(xoxc- token plus xoxd- d cookie). Nothing is posted, joined or cached.
"""

import json
import logging
import math
import os
import re
import tempfile
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import ClassVar

import click
from rich.console import Console
from rich.table import Table
from rich.text import Text
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError, SlackClientError

logger = logging.getLogger(__name__)

console = Console()

# -- Errors -------------------------------------------------------------------


class SlackCliError(click.ClickException):
    """Fatal error with an optional actionable hint.

    click prints the message (and hint) to stderr and exits with status 1.
    ``code`` holds the Slack API error code when the error came from Slack.
    """

    def __init__(
        self, message: str, hint: str | None = None, code: str | None = None
    ) -> None:
        super().__init__(message)
        self.hint = hint
        self.code = code

    def format_message(self) -> str:
        if self.hint:
            return f"{self.message}\n  {self.hint}"
        return self.message


class AuthError(SlackCliError):
    """Credential is invalid, expired or revoked."""


class PermissionDeniedError(SlackCliError):
    """Missing scope, not a member of the channel, or no access."""


class NotFoundError(SlackCliError):
    """Unknown channel, thread or user."""


class RateLimitedError(SlackCliError):
    """Slack refused the call with a rate limit. Never retried."""


class ValidationError(SlackCliError):
    """Out-of-range count, bad sort mode, bad date, malformed cursor."""


class InvalidDateFormat(ValidationError):
    """Date expression matched neither the relative nor absolute grammar."""


class NetworkError(SlackCliError):
    """Transport failure before Slack produced a response."""


class WorkspaceNotFound(SlackCliError):
    """No stored workspace matches the requested id or name."""


_RELOGIN_HINT = "Re-authenticate with 'auth login' or 'auth login-browser'."

# Slack error code -> (kind, message, hint)
_ERROR_KINDS: dict[str, tuple[type[SlackCliError], str, str | None]] = {
    "invalid_auth": (
        AuthError,
        "Your session has expired or authentication is invalid.",
        _RELOGIN_HINT,
    ),
    "not_authed": (AuthError, "No authentication token was sent.", _RELOGIN_HINT),
    "token_revoked": (
        AuthError,
        "Your authentication token has been revoked.",
        _RELOGIN_HINT,
    ),
    "token_expired": (
        AuthError,
        "Your authentication token has expired.",
        _RELOGIN_HINT,
    ),
    "account_inactive": (
        AuthError,
        "Your Slack account is inactive.",
        "Contact your workspace administrator.",
    ),
    "missing_scope": (
        PermissionDeniedError,
        "Missing required permissions.",
        "Check your token scopes and re-authenticate if needed.",
    ),
    "not_in_channel": (
        PermissionDeniedError,
        "You're not a member of this channel.",
        "Join the channel in Slack, then try again.",
    ),
    "no_permission": (
        PermissionDeniedError,
        "You don't have permission to access this resource.",
        "Contact your workspace administrator for access.",
    ),
    "access_denied": (
        PermissionDeniedError,
        "Access to this resource was denied.",
        "Contact your workspace administrator for access.",
    ),
    "not_allowed_token_type": (
        PermissionDeniedError,
        "This token type cannot call this method.",
        "Search needs a user token (xoxp-) or browser credentials.",
    ),
    "channel_not_found": (
        NotFoundError,
        "Channel not found.",
        "Verify the channel ID with 'conversations list'.",
    ),
    "thread_not_found": (
        NotFoundError,
        "Thread not found.",
        "Verify the thread timestamp with 'conversations read'.",
    ),
    "user_not_found": (NotFoundError, "User not found.", None),
    "users_not_found": (NotFoundError, "Users not found.", None),
    "ratelimited": (
        RateLimitedError,
        "Rate limited by Slack.",
        "Wait 60 seconds and try again.",
    ),
    "invalid_cursor": (
        ValidationError,
        "Invalid pagination cursor.",
        "The cursor may have expired. Start a new query without --cursor.",
    ),
    "invalid_ts_oldest": (
        ValidationError,
        "Invalid --oldest timestamp.",
        'Use a date like "2024-01-15" or "7 days ago".',
    ),
    "invalid_ts_latest": (
        ValidationError,
        "Invalid --latest timestamp.",
        'Use a date like "2024-01-15" or "7 days ago".',
    ),
    "invalid_limit": (ValidationError, "Invalid --limit value.", None),
}


def error_from_code(code: str) -> SlackCliError:
    """Map a Slack API error code to its error kind.

    Unknown codes surface verbatim with no hint.
    """
    kind = _ERROR_KINDS.get(code)
    if kind is None:
        return SlackCliError(code, code=code)
    cls, message, hint = kind
    return cls(message, hint=hint, code=code)


def _error_from_api_error(exc: SlackApiError) -> SlackCliError:
    response = exc.response
    if getattr(response, "status_code", None) == 429:
        return error_from_code("ratelimited")
    data = getattr(response, "data", None)
    code = data.get("error") if isinstance(data, dict) else None
    return error_from_code(code or "unknown_error")


# -- Date ranges --------------------------------------------------------------

RELATIVE_DATE_RE = re.compile(
    r"^\s*(\d+)\s+(hours?|days?|weeks?)\s+ago\s*$", re.IGNORECASE
)
# Nine or more digits, or a fraction. Shorter digit runs such as "20240115"
# are left for the ISO parser.
EPOCH_RE = re.compile(r"^(\d{9,}(\.\d+)?|\d+\.\d+)$")
UNIT_SECONDS = {"hour": 3600, "day": 86400, "week": 7 * 86400}

_ABSOLUTE_FORMATS = (
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%b %d %Y",
    "%b %d %Y %H:%M",
    "%b %d, %Y",
    "%b %d, %Y %H:%M",
    "%B %d %Y",
    "%B %d %Y %H:%M",
    "%B %d, %Y",
    "%B %d, %Y %H:%M",
    "%d %b %Y",
    "%d %b %Y %H:%M",
    "%d %B %Y",
    "%d %B %Y %H:%M",
)


def _parse_absolute(expr: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(expr)
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in _ABSOLUTE_FORMATS:
            try:
                parsed = datetime.strptime(expr, fmt)
                break
            except ValueError:
                continue
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_date(expr: str, now: float | None = None) -> str:
    """Convert a date expression to whole epoch seconds, as a string.

    Accepts "<N> hours|days|weeks ago" (relative to ``now``), ISO dates,
    bare epoch values or Slack timestamps, and a handful of calendar
    formats such as "2024/01/15" or "January 15, 2024". Dates without a
    timezone are read as UTC.
    """
    match = RELATIVE_DATE_RE.match(expr)
    if match:
        if now is None:
            now = time.time()
        amount = int(match.group(1))
        unit = match.group(2).lower().rstrip("s")
        return str(math.floor(now - amount * UNIT_SECONDS[unit]))

    value = expr.strip()
    if EPOCH_RE.match(value):
        return str(math.floor(Decimal(value)))

    parsed = _parse_absolute(value)
    if parsed is None:
        raise InvalidDateFormat(
            f"Invalid date format: '{expr}'",
            hint='Use a date like "2024-01-15" or a relative one like "7 days ago".',
        )
    return str(math.floor(parsed.timestamp()))


def resolve_date_range(
    oldest: str | None, latest: str | None, now: float | None = None
) -> tuple[str | None, str | None]:
    """Resolve both bounds against a single clock reading."""
    if now is None:
        now = time.time()
    oldest_ts = resolve_date(oldest, now=now) if oldest else None
    latest_ts = resolve_date(latest, now=now) if latest else None
    if oldest_ts and latest_ts and int(oldest_ts) > int(latest_ts):
        raise ValidationError(
            f"--oldest ({oldest}) is later than --latest ({latest}).",
            hint="Swap the two bounds.",
        )
    return oldest_ts, latest_ts


# -- Workspace credentials ----------------------------------------------------

CONFIG_DIR = Path.home() / ".config" / "slack-reader-cli"
CONFIG_FILE = CONFIG_DIR / "workspaces.json"


@dataclass
class StandardAuth:
    """Workspace authenticated with a bot (xoxb-) or user (xoxp-) token."""

    workspace_id: str
    workspace_name: str
    token: str
    token_type: str

    auth_type: ClassVar[str] = "standard"

    def to_dict(self) -> dict:
        return {"auth_type": self.auth_type, **asdict(self)}


@dataclass
class BrowserAuth:
    """Workspace authenticated with browser session credentials.

    The xoxc- token is only valid together with the xoxd- d cookie and
    against the workspace's own URL.
    """

    workspace_id: str
    workspace_name: str
    xoxd: str
    xoxc: str
    workspace_url: str

    auth_type: ClassVar[str] = "browser"

    def to_dict(self) -> dict:
        return {"auth_type": self.auth_type, **asdict(self)}


WorkspaceConfig = StandardAuth | BrowserAuth


def workspace_config_from_dict(data: dict) -> WorkspaceConfig:
    auth_type = data.get("auth_type")
    if auth_type == "standard":
        return StandardAuth(
            workspace_id=data["workspace_id"],
            workspace_name=data["workspace_name"],
            token=data["token"],
            token_type=data["token_type"],
        )
    if auth_type == "browser":
        return BrowserAuth(
            workspace_id=data["workspace_id"],
            workspace_name=data["workspace_name"],
            xoxd=data["xoxd"],
            xoxc=data["xoxc"],
            workspace_url=data["workspace_url"],
        )
    raise SlackCliError(
        f"Unknown auth_type {auth_type!r} for workspace "
        f"{data.get('workspace_id', '?')}.",
        hint=f"Remove it with 'auth remove' or edit {CONFIG_FILE}.",
    )


def token_type_for(token: str) -> str:
    """Bot tokens start with xoxb-; everything else is treated as a user token."""
    return "bot" if token.startswith("xoxb-") else "user"


def normalize_workspace_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if not re.match(r"^https?://", url):
        url = f"https://{url}"
    return url


class CredentialStore:
    """Workspace credentials kept in a single JSON file.

    Layout: ``{"default_workspace": id | null, "workspaces": {id: config}}``.
    ``load()`` reads the whole file; every mutation rewrites it atomically
    via ``save()``. Concurrent writers are not coordinated: the last save
    wins.
    """

    def __init__(self, path: Path | None = None) -> None:
        # Resolved at call time so monkeypatching CONFIG_FILE works in tests
        self.path = path if path is not None else CONFIG_FILE
        self._workspaces: dict[str, WorkspaceConfig] = {}
        self._default_id: str | None = None

    @classmethod
    def open(cls, path: Path | None = None) -> "CredentialStore":
        store = cls(path)
        store.load()
        return store

    def load(self) -> None:
        self._workspaces = {}
        self._default_id = None
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as exc:
            raise SlackCliError(
                f"Credential file {self.path} is not valid JSON: {exc}",
                hint="Delete it and log in again.",
            ) from exc
        try:
            for ws_id, raw in data.get("workspaces", {}).items():
                self._workspaces[ws_id] = workspace_config_from_dict(raw)
        except (KeyError, TypeError, AttributeError) as exc:
            self._workspaces = {}
            raise SlackCliError(
                f"Credential file {self.path} is malformed: missing {exc}",
                hint="Delete it and log in again.",
            ) from exc
        default = data.get("default_workspace")
        if default in self._workspaces:
            self._default_id = default
        elif default:
            logger.debug("Dropping dangling default workspace %s", default)

    def save(self) -> None:
        """Write the store atomically: temp file in the same dir, then rename."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "default_workspace": self._default_id,
            "workspaces": {
                ws_id: ws.to_dict() for ws_id, ws in self._workspaces.items()
            },
        }
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=".workspaces-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(payload, fh, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Saved %d workspaces to %s", len(self._workspaces), self.path)

    @property
    def default_id(self) -> str | None:
        return self._default_id

    def list(self) -> list[WorkspaceConfig]:
        return list(self._workspaces.values())

    def add(self, config: WorkspaceConfig) -> None:
        """Insert or replace a workspace; the first one becomes the default."""
        self._workspaces[config.workspace_id] = config
        if self._default_id is None:
            self._default_id = config.workspace_id
        self.save()

    def get(self, id_or_name: str | None = None) -> WorkspaceConfig:
        """Look up a workspace by id, then by name, or return the default."""
        if not self._workspaces:
            raise WorkspaceNotFound(
                "No authenticated workspaces found.",
                hint="Run 'auth login' or 'auth login-browser' first.",
            )
        if id_or_name is None:
            if self._default_id is None:
                raise WorkspaceNotFound(
                    "No default workspace set.",
                    hint="Pick one with 'auth set-default <workspace-id>' or pass -w.",
                )
            return self._workspaces[self._default_id]
        if id_or_name in self._workspaces:
            return self._workspaces[id_or_name]
        for ws in self._workspaces.values():
            if ws.workspace_name == id_or_name:
                return ws
        available = ", ".join(
            f"{ws.workspace_name} ({ws.workspace_id})"
            for ws in self._workspaces.values()
        )
        raise WorkspaceNotFound(
            f"Workspace '{id_or_name}' not found. Available: {available}"
        )

    def set_default(self, workspace_id: str) -> None:
        self._require(workspace_id)
        self._default_id = workspace_id
        self.save()

    def remove(self, workspace_id: str) -> None:
        """Drop a workspace. Removing the default leaves no default."""
        self._require(workspace_id)
        del self._workspaces[workspace_id]
        if self._default_id == workspace_id:
            self._default_id = None
        self.save()

    def clear(self) -> None:
        self._workspaces = {}
        self._default_id = None
        self.save()

    def _require(self, workspace_id: str) -> None:
        if workspace_id not in self._workspaces:
            raise WorkspaceNotFound(
                f"Workspace '{workspace_id}' not found.",
                hint="List workspace IDs with 'auth list'.",
            )


# -- Slack API client ---------------------------------------------------------

SLACK_API_URL = "https://slack.com/api/"
REQUEST_TIMEOUT_SECONDS = 30


@dataclass
class ConversationPage:
    channels: list[dict]
    next_cursor: str | None = None


@dataclass
class MessagePage:
    messages: list[dict]
    next_cursor: str | None = None


@dataclass
class SearchPage:
    matches: list[dict]
    total: int = 0


@dataclass
class AuthIdentity:
    url: str
    team: str
    team_id: str
    user: str
    user_id: str


def build_web_client(config: WorkspaceConfig) -> WebClient:
    """Build the SDK client for a workspace's auth mode.

    Standard tokens go in the Authorization header. Browser credentials
    carry the d cookie in a header and talk to the workspace URL; their
    xoxc- token is added to each request body by AuthenticatedClient.
    """
    if isinstance(config, BrowserAuth):
        return WebClient(
            base_url=f"{config.workspace_url}/api/",
            headers={"cookie": f"d={config.xoxd}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    return WebClient(
        token=config.token,
        base_url=SLACK_API_URL,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )


def _next_cursor(resp) -> str | None:
    """Slack signals the last page with an empty next_cursor."""
    return (resp.get("response_metadata") or {}).get("next_cursor") or None


def _flag(value: bool) -> str:
    return "true" if value else "false"


class AuthenticatedClient:
    """Typed Slack Web API operations bound to one workspace.

    Every method is a single round trip. Failures are raised as one of
    the SlackCliError kinds, so callers never inspect Slack error codes.
    """

    def __init__(
        self, config: WorkspaceConfig, web_client: WebClient | None = None
    ) -> None:
        self.config = config
        self._body_token = config.xoxc if isinstance(config, BrowserAuth) else None
        self._web = web_client if web_client is not None else build_web_client(config)

    def _call(self, method: str, **params) -> dict:
        data = {key: value for key, value in params.items() if value is not None}
        logger.debug("POST %s %s", method, data)
        if self._body_token:
            data["token"] = self._body_token
        try:
            return self._web.api_call(method, data=data)
        except SlackApiError as exc:
            raise _error_from_api_error(exc) from exc
        except (SlackClientError, OSError) as exc:
            raise NetworkError(
                f"Could not reach Slack: {exc}",
                hint="Check your network connection and try again.",
            ) from exc

    def list_conversations(
        self,
        types: str,
        limit: int,
        exclude_archived: bool = False,
        cursor: str | None = None,
    ) -> ConversationPage:
        resp = self._call(
            "conversations.list",
            types=types,
            limit=limit,
            exclude_archived=_flag(exclude_archived),
            cursor=cursor,
        )
        return ConversationPage(
            channels=list(resp.get("channels", [])), next_cursor=_next_cursor(resp)
        )

    def get_conversation_info(self, channel_id: str) -> dict:
        resp = self._call("conversations.info", channel=channel_id)
        return resp.get("channel", {})

    def get_conversation_history(
        self,
        channel_id: str,
        limit: int,
        oldest: str | None = None,
        latest: str | None = None,
        cursor: str | None = None,
    ) -> MessagePage:
        resp = self._call(
            "conversations.history",
            channel=channel_id,
            limit=limit,
            oldest=oldest,
            latest=latest,
            cursor=cursor,
        )
        return MessagePage(
            messages=list(resp.get("messages", [])), next_cursor=_next_cursor(resp)
        )

    def get_conversation_replies(
        self,
        channel_id: str,
        thread_ts: str,
        limit: int,
        oldest: str | None = None,
        latest: str | None = None,
        cursor: str | None = None,
    ) -> MessagePage:
        resp = self._call(
            "conversations.replies",
            channel=channel_id,
            ts=thread_ts,
            limit=limit,
            oldest=oldest,
            latest=latest,
            cursor=cursor,
        )
        return MessagePage(
            messages=list(resp.get("messages", [])), next_cursor=_next_cursor(resp)
        )

    def get_users_info(self, user_ids: list[str]) -> list[dict]:
        """Look up many users in one request."""
        resp = self._call("users.info", users=",".join(user_ids))
        users = resp.get("users")
        if users is not None:
            return list(users)
        # Single-user shape, returned when only one id was asked for
        return [resp["user"]] if resp.get("user") else []

    def search_messages(self, query: str, count: int, sort: str) -> SearchPage:
        resp = self._call("search.messages", query=query, count=count, sort=sort)
        messages = resp.get("messages", {})
        return SearchPage(
            matches=list(messages.get("matches", [])),
            total=messages.get("total", 0),
        )

    def test_auth(self) -> AuthIdentity:
        resp = self._call("auth.test")
        return AuthIdentity(
            url=(resp.get("url") or "").rstrip("/"),
            team=resp.get("team", ""),
            team_id=resp.get("team_id", ""),
            user=resp.get("user", ""),
            user_id=resp.get("user_id", ""),
        )


def authenticate_standard(
    token: str, workspace_name: str, web_client: WebClient | None = None
) -> StandardAuth:
    """Validate a bot/user token with auth.test and build its config."""
    config = StandardAuth(
        workspace_id="",
        workspace_name=workspace_name,
        token=token,
        token_type=token_type_for(token),
    )
    identity = AuthenticatedClient(config, web_client).test_auth()
    return replace(config, workspace_id=identity.team_id)


def authenticate_browser(
    xoxd: str,
    xoxc: str,
    workspace_url: str,
    workspace_name: str | None = None,
    web_client: WebClient | None = None,
) -> BrowserAuth:
    """Validate browser credentials with auth.test and build their config.

    The workspace name falls back to the team name Slack reports.
    """
    config = BrowserAuth(
        workspace_id="",
        workspace_name=workspace_name or "",
        xoxd=xoxd,
        xoxc=xoxc,
        workspace_url=normalize_workspace_url(workspace_url),
    )
    identity = AuthenticatedClient(config, web_client).test_auth()
    return replace(
        config,
        workspace_id=identity.team_id,
        workspace_name=workspace_name or identity.team,
    )


# -- Enrichment pipeline ------------------------------------------------------

CONVERSATION_TYPES = "public_channel,private_channel,mpim,im"
SEARCH_SORTS = ("score", "timestamp")
SEARCH_COUNT_MAX = 100

CHANNEL_FIELDS = (
    "id",
    "name",
    "is_im",
    "is_mpim",
    "is_private",
    "is_archived",
    "user",
    "unread_count_display",
    "last_read",
)
MESSAGE_FIELDS = (
    "ts",
    "thread_ts",
    "user",
    "text",
    "type",
    "reply_count",
    "reactions",
    "bot_id",
)


def _pick(item: dict, keys: tuple[str, ...]) -> dict:
    return {key: item[key] for key in keys if item.get(key) is not None}


def _user_summary(user: dict) -> dict:
    return {
        "id": user.get("id"),
        "name": user.get("name"),
        "real_name": user.get("real_name"),
        "email": user.get("profile", {}).get("email"),
    }


@dataclass
class UnreadSummary:
    """Outcome of the per-channel unread lookups."""

    enriched: list[str] = field(default_factory=list)
    skipped: dict[str, SlackCliError] = field(default_factory=dict)


@dataclass
class ConversationListing:
    channels: list[dict]
    users: dict[str, dict]
    next_cursor: str | None = None
    unread: UnreadSummary | None = None

    def to_dict(self) -> dict:
        data = {
            "channel_count": len(self.channels),
            "channels": [self._channel_dict(ch) for ch in self.channels],
            "users": [_user_summary(u) for u in self.users.values()],
            "next_cursor": self.next_cursor,
        }
        if self.unread is not None:
            data["unread_skipped"] = list(self.unread.skipped)
        return data

    @staticmethod
    def _channel_dict(channel: dict) -> dict:
        data = _pick(channel, CHANNEL_FIELDS)
        topic = (channel.get("topic") or {}).get("value")
        if topic:
            data["topic"] = topic
        return data


@dataclass
class MessageHistory:
    channel_id: str
    messages: list[dict]
    users: dict[str, dict]
    parents: dict[str, dict] = field(default_factory=dict)
    thread_ts: str | None = None
    next_cursor: str | None = None
    workspace_url: str | None = None

    def parent_of(self, message: dict) -> dict | None:
        """Root of the thread a reply belongs to, when it is in this page."""
        if not is_reply(message):
            return None
        return self.parents.get(message["thread_ts"])

    def to_dict(self) -> dict:
        return {
            "channel_id": self.channel_id,
            "thread_ts": self.thread_ts,
            "message_count": len(self.messages),
            "messages": [_pick(msg, MESSAGE_FIELDS) for msg in self.messages],
            "users": [_user_summary(u) for u in self.users.values()],
            "next_cursor": self.next_cursor,
        }


@dataclass
class SearchResults:
    query: str
    matches: list[dict]
    total: int
    users: dict[str, dict]

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "total": self.total,
            "matches": [
                {
                    **_pick(m, ("ts", "user", "username", "text", "permalink")),
                    "channel": _pick(m.get("channel") or {}, ("id", "name")),
                }
                for m in self.matches
            ],
            "users": [_user_summary(u) for u in self.users.values()],
        }


def is_reply(message: dict) -> bool:
    thread_ts = message.get("thread_ts")
    return bool(thread_ts) and thread_ts != message.get("ts")


def _ts_key(message: dict) -> Decimal:
    try:
        return Decimal(message.get("ts", "0"))
    except InvalidOperation:
        return Decimal(0)


def order_chronologically(messages: list[dict]) -> list[dict]:
    """Oldest first; ts strings compare exactly as decimals."""
    return sorted(messages, key=_ts_key)


def index_thread_parents(messages: list[dict]) -> dict[str, dict]:
    """Index thread roots (thread_ts == ts) in a page by their ts."""
    return {
        msg["ts"]: msg
        for msg in messages
        if msg.get("thread_ts") and msg.get("thread_ts") == msg.get("ts")
    }


def collect_user_ids(items: list[dict]) -> list[str]:
    """Distinct ``user`` ids in first-seen order."""
    seen: dict[str, None] = {}
    for item in items:
        user_id = item.get("user")
        if user_id:
            seen.setdefault(user_id, None)
    return list(seen)


def enrich_unread(client: AuthenticatedClient, channels: list[dict]) -> UnreadSummary:
    """Copy unread counters from conversations.info onto each channel.

    One call per channel, one at a time. A channel whose lookup fails is
    recorded in ``skipped`` and left untouched; the others proceed.
    """
    summary = UnreadSummary()
    for channel in channels:
        channel_id = channel["id"]
        try:
            info = client.get_conversation_info(channel_id)
        except SlackCliError as exc:
            logger.debug("Skipping unread count for %s: %s", channel_id, exc.message)
            summary.skipped[channel_id] = exc
            continue
        for key in ("unread_count_display", "last_read"):
            if key in info:
                channel[key] = info[key]
        summary.enriched.append(channel_id)
    if summary.skipped:
        logger.info(
            "Unread counts unavailable for %d of %d conversations",
            len(summary.skipped),
            len(channels),
        )
    return summary


def resolve_users(client: AuthenticatedClient, user_ids: list[str]) -> dict[str, dict]:
    """Fetch all users in one batch call; no call at all when there are none."""
    if not user_ids:
        return {}
    users = client.get_users_info(user_ids)
    return {user["id"]: user for user in users if user.get("id")}


def _has_unreads(channel: dict) -> bool:
    return (channel.get("unread_count_display") or 0) > 0


class EnrichmentPipeline:
    """Runs one command's calls: fetch, unread fan-out, users, threads, order.

    Fetch and user resolution failures propagate; unread lookups fail per
    channel without aborting the command. Cursors from Slack are passed
    through untouched.
    """

    def __init__(self, client: AuthenticatedClient) -> None:
        self.client = client

    def list_conversations(
        self,
        types: str = CONVERSATION_TYPES,
        limit: int = 100,
        exclude_archived: bool = False,
        cursor: str | None = None,
        with_unread: bool = False,
        unread_only: bool = False,
    ) -> ConversationListing:
        page = self.client.list_conversations(
            types, limit, exclude_archived=exclude_archived, cursor=cursor
        )
        channels = page.channels
        unread = None
        if with_unread or unread_only:
            unread = enrich_unread(self.client, channels)
            if unread_only:
                channels = [ch for ch in channels if _has_unreads(ch)]

        dm_channels = [ch for ch in channels if ch.get("is_im")]
        users = resolve_users(self.client, collect_user_ids(dm_channels))
        logger.debug("Listed %d conversations, next cursor %r", len(channels), page.next_cursor)
        return ConversationListing(
            channels=channels,
            users=users,
            next_cursor=page.next_cursor,
            unread=unread,
        )

    def list_unread(
        self,
        types: str = CONVERSATION_TYPES,
        limit: int = 100,
        cursor: str | None = None,
    ) -> ConversationListing:
        return self.list_conversations(
            types, limit, exclude_archived=True, cursor=cursor, unread_only=True
        )

    def read_conversation(
        self,
        channel_id: str,
        thread_ts: str | None = None,
        limit: int = 100,
        oldest: str | None = None,
        latest: str | None = None,
        cursor: str | None = None,
        exclude_replies: bool = False,
        permalinks: bool = False,
        now: float | None = None,
    ) -> MessageHistory:
        """Read a channel's history, or one thread when ``thread_ts`` is given.

        ``oldest``/``latest`` take any expression resolve_date understands.
        """
        oldest_ts, latest_ts = resolve_date_range(oldest, latest, now=now)

        if thread_ts:
            page = self.client.get_conversation_replies(
                channel_id,
                thread_ts,
                limit,
                oldest=oldest_ts,
                latest=latest_ts,
                cursor=cursor,
            )
        else:
            page = self.client.get_conversation_history(
                channel_id, limit, oldest=oldest_ts, latest=latest_ts, cursor=cursor
            )
        messages = page.messages
        if exclude_replies and not thread_ts:
            messages = [msg for msg in messages if not is_reply(msg)]

        users = resolve_users(self.client, collect_user_ids(messages))
        parents = index_thread_parents(messages)
        messages = order_chronologically(messages)

        return MessageHistory(
            channel_id=channel_id,
            messages=messages,
            users=users,
            parents=parents,
            thread_ts=thread_ts,
            next_cursor=page.next_cursor,
            workspace_url=self.workspace_url() if permalinks else None,
        )

    def workspace_url(self) -> str:
        """Base URL for permalinks; standard tokens have to ask auth.test."""
        config = self.client.config
        if isinstance(config, BrowserAuth):
            return config.workspace_url
        return self.client.test_auth().url

    def search_messages(
        self,
        query: str,
        count: int = 20,
        sort: str = "score",
        channel: str | None = None,
    ) -> SearchResults:
        validate_search(query, count, sort)
        full_query = f"{query} in:<#{channel}>" if channel else query
        page = self.client.search_messages(full_query, count=count, sort=sort)
        users = resolve_users(self.client, collect_user_ids(page.matches))
        return SearchResults(
            query=full_query, matches=page.matches, total=page.total, users=users
        )


def validate_search(query: str, count: int, sort: str) -> None:
    if not query or not query.strip():
        raise ValidationError("Search query must not be empty.")
    if not 1 <= count <= SEARCH_COUNT_MAX:
        raise ValidationError(
            f"Count must be between 1 and {SEARCH_COUNT_MAX}, got {count}."
        )
    if sort not in SEARCH_SORTS:
        raise ValidationError(
            f"Sort must be either \"timestamp\" or \"score\", got \"{sort}\"."
        )


# -- Output helpers -----------------------------------------------------------


def _format_ts(ts: str) -> str:
    """Convert a Slack timestamp to a human-readable datetime string."""
    try:
        epoch = float(ts.split(".")[0])
        dt = datetime.fromtimestamp(epoch, tz=timezone.utc)
        return dt.strftime("%Y-%m-%d %H:%M")
    except (ValueError, IndexError):
        return ts


def _user_label(user_id: str | None, users: dict[str, dict], fallback: str) -> str:
    user = users.get(user_id) if user_id else None
    if user:
        return user.get("real_name") or user.get("name") or user_id
    return fallback


def _permalink(workspace_url: str, channel_id: str, ts: str) -> str:
    return f"{workspace_url}/archives/{channel_id}/p{ts.replace('.', '')}"


def _print_json(data: dict) -> None:
    click.echo(json.dumps(data, indent=2))


def _print_continuation(cursor: str | None) -> None:
    if cursor:
        console.print(
            Text(f"\nMore results available. Continue with --cursor {cursor}", style="dim")
        )


def print_workspaces(workspaces: list[WorkspaceConfig], default_id: str | None) -> None:
    table = Table(title=f"Workspaces ({len(workspaces)})")
    table.add_column("Name", style="cyan")
    table.add_column("ID")
    table.add_column("Auth")
    table.add_column("Default")

    for ws in workspaces:
        auth = "Browser" if ws.auth_type == "browser" else f"Standard ({ws.token_type})"
        is_default = "yes" if ws.workspace_id == default_id else ""
        table.add_row(ws.workspace_name, ws.workspace_id, auth, is_default)

    console.print(table)


def _channel_group(ch: dict) -> str:
    if ch.get("is_im"):
        return "Direct Messages"
    if ch.get("is_mpim"):
        return "Group Messages"
    if ch.get("is_private"):
        return "Private Channels"
    return "Public Channels"


_GROUP_STYLES = {
    "Public Channels": "cyan",
    "Private Channels": "yellow",
    "Group Messages": "magenta",
    "Direct Messages": "blue",
}


def print_channels(listing: ConversationListing) -> None:
    """Render conversations grouped by type, with unread badges."""
    console.print(Text(f"Conversations ({len(listing.channels)})", style="bold"))

    groups: dict[str, list[dict]] = {name: [] for name in _GROUP_STYLES}
    for ch in listing.channels:
        groups[_channel_group(ch)].append(ch)

    for group, channels in groups.items():
        if not channels:
            continue
        console.print(Text(f"\n{group}:", style=_GROUP_STYLES[group]))
        for idx, ch in enumerate(channels, start=1):
            if ch.get("is_im"):
                label = "@" + _user_label(ch.get("user"), listing.users, "Unknown User")
            elif ch.get("is_mpim"):
                label = ch.get("name") or "Group"
            elif ch.get("is_private"):
                label = ch.get("name", ch["id"])
            else:
                label = "#" + ch.get("name", ch["id"])

            line = Text(f"  {idx}. {label} ")
            unread = ch.get("unread_count_display") or 0
            if unread > 0:
                line.append(f" {unread} ", style="bold white on red")
                line.append(" ")
            line.append(f"({ch['id']})", style="dim")
            if ch.get("is_archived"):
                line.append(" [archived]", style="bright_black")
            console.print(line)

            topic = (ch.get("topic") or {}).get("value", "")
            if topic and group == "Public Channels":
                console.print(Text(f"     {topic}", style="dim"))

    if listing.unread is not None and listing.unread.skipped:
        console.print(
            Text(
                f"\nUnread counts unavailable for {len(listing.unread.skipped)} "
                "conversation(s).",
                style="yellow",
            )
        )
    _print_continuation(listing.next_cursor)


def print_history(history: MessageHistory) -> None:
    """Render messages oldest first with thread context and permalinks."""
    title = f"#{history.channel_id}"
    if history.thread_ts:
        title += f" thread {history.thread_ts}"
    console.print(Text(f"{title} ({len(history.messages)} messages)\n", style="bold"))

    for idx, msg in enumerate(history.messages):
        ts = msg.get("ts", "")
        reply = is_reply(msg)
        author = _user_label(msg.get("user"), history.users, msg.get("bot_id") or "Unknown")

        line = Text()
        line.append(f"[{_format_ts(ts)}] ", style="dim")
        line.append(f"@{author}", style="bold")
        if reply:
            line.append(" (in thread)", style="dim")
        console.print(line)

        parent = history.parent_of(msg)
        if parent is not None:
            parent_author = _user_label(
                parent.get("user"), history.users, parent.get("bot_id") or "Unknown"
            )
            preview = parent.get("text", "")
            if len(preview) > 50:
                preview = preview[:50] + "..."
            console.print(
                Text(f'Replying to @{parent_author}: "{preview}"', style="dim")
            )

        for text_line in msg.get("text", "").split("\n"):
            console.print(Text(f"  {text_line}"))

        meta = f"  ts: {ts}"
        if reply:
            meta += f" | thread_ts: {msg['thread_ts']}"
        console.print(Text(meta, style="dim"))

        if history.workspace_url and ts:
            console.print(
                Text(f"  {_permalink(history.workspace_url, history.channel_id, ts)}", style="dim")
            )

        reactions = msg.get("reactions") or []
        if reactions:
            summary = "  ".join(f"{r['name']} {r['count']}" for r in reactions)
            console.print(Text(f"  {summary}", style="dim"))

        # Indicate threaded messages
        if msg.get("reply_count") and not reply:
            console.print(Text(f"  {msg['reply_count']} replies", style="cyan"))

        if idx < len(history.messages) - 1:
            console.print()

    _print_continuation(history.next_cursor)


def print_search(results: SearchResults) -> None:
    if not results.matches:
        console.print(Text("No results found", style="yellow"))
        return

    console.print(
        Text(
            f"Search results for '{results.query}' "
            f"({len(results.matches)} of {results.total} total)\n",
            style="bold",
        )
    )
    for idx, match in enumerate(results.matches, start=1):
        channel = match.get("channel") or {}
        channel_name = channel.get("name") or channel.get("id") or "Unknown Channel"
        prefix = "private " if channel.get("is_private") else "#"
        author = _user_label(match.get("user"), results.users, match.get("username") or "Unknown")

        console.print(
            Text(f"[{idx}] {_format_ts(match.get('ts', ''))} | {prefix}{channel_name}", style="dim")
        )
        console.print(Text(f"@{author}", style="bold"))
        for text_line in match.get("text", "").split("\n"):
            console.print(Text(f"  {text_line}"))
        meta = f"  ts: {match.get('ts', '')}"
        if match.get("permalink"):
            meta += f" | {match['permalink']}"
        console.print(Text(meta, style="dim"))
        if idx < len(results.matches):
            console.print()


# -- CLI group ----------------------------------------------------------------


def get_client(
    workspace: str | None = None, store: CredentialStore | None = None
) -> AuthenticatedClient:
    """Build an authenticated client for the requested (or default) workspace."""
    if store is None:
        store = CredentialStore.open()
    return AuthenticatedClient(store.get(workspace))


@click.group()
@click.option(
    "--debug", is_flag=True, default=False, help="Enable debug logging."
)
@click.option(
    "-w",
    "--workspace",
    default=None,
    help="Workspace ID or name to use (defaults to the default workspace).",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, workspace: str | None) -> None:
    """Slack Reader CLI: read Slack conversations from your terminal."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = workspace


# -- auth ---------------------------------------------------------------------


@cli.group()
def auth() -> None:
    """Manage workspace authentication."""


@auth.command()
@click.option("--token", required=True, help="Slack bot (xoxb-) or user (xoxp-) token.")
@click.option(
    "--workspace-name", required=True, help="Name to identify this workspace by."
)
def login(token: str, workspace_name: str) -> None:
    """Log in with a standard Slack app token."""
    store = CredentialStore.open()
    config = authenticate_standard(token, workspace_name)
    store.add(config)
    console.print(
        f"[green]Authenticated as workspace [bold]{config.workspace_name}[/bold][/]"
    )
    console.print(f"  Workspace ID: {config.workspace_id}")
    console.print(f"  Token type: {config.token_type}")


@auth.command("login-browser")
@click.option("--xoxd", required=True, help="Browser session cookie (xoxd-...).")
@click.option("--xoxc", required=True, help="Browser API token (xoxc-...).")
@click.option(
    "--workspace-url",
    required=True,
    help="Workspace URL, e.g. https://myteam.slack.com",
)
@click.option(
    "--workspace-name",
    default=None,
    help="Name for this workspace (defaults to the team name).",
)
def login_browser(
    xoxd: str, xoxc: str, workspace_url: str, workspace_name: str | None
) -> None:
    """Log in with browser session credentials (xoxd- cookie + xoxc- token)."""
    store = CredentialStore.open()
    config = authenticate_browser(xoxd, xoxc, workspace_url, workspace_name)
    store.add(config)
    console.print(
        f"[green]Authenticated as workspace [bold]{config.workspace_name}[/bold][/]"
    )
    console.print(f"  Workspace ID: {config.workspace_id}")
    console.print(f"  Workspace URL: {config.workspace_url}")


@auth.command("list")
def list_workspaces() -> None:
    """List all saved workspaces."""
    store = CredentialStore.open()
    workspaces = store.list()
    if not workspaces:
        console.print("No authenticated workspaces found.")
        console.print(
            "[dim]Run 'auth login' or 'auth login-browser' to authenticate.[/]"
        )
        return
    print_workspaces(workspaces, store.default_id)
    console.print("[dim]Use -w <id|name> to switch workspace for a command.[/]")


@auth.command("set-default")
@click.argument("workspace_id")
def set_default(workspace_id: str) -> None:
    """Set the default workspace."""
    store = CredentialStore.open()
    store.set_default(workspace_id)
    console.print(f"[green]Default workspace set to [bold]{workspace_id}[/bold][/]")


@auth.command()
@click.argument("workspace_id")
def remove(workspace_id: str) -> None:
    """Remove a saved workspace."""
    store = CredentialStore.open()
    store.remove(workspace_id)
    console.print(f"[green]Removed workspace [bold]{workspace_id}[/bold][/]")


@auth.command()
def logout() -> None:
    """Forget every saved workspace."""
    store = CredentialStore.open()
    store.clear()
    console.print("[green]Logged out from all workspaces[/]")


# -- conversations ------------------------------------------------------------


@cli.group()
def conversations() -> None:
    """List and read channels, DMs and group messages."""


_types_option = click.option(
    "--types",
    default=CONVERSATION_TYPES,
    show_default=True,
    help="Comma-separated conversation types.",
)
_limit_option = click.option(
    "--limit",
    default=100,
    type=click.IntRange(1, 1000),
    show_default=True,
    help="Number of conversations to return.",
)
_cursor_option = click.option(
    "--cursor", default=None, help="Continue from a previous page's cursor."
)
_json_option = click.option(
    "--json", "as_json", is_flag=True, default=False, help="Output JSON."
)


@conversations.command("list")
@_types_option
@_limit_option
@click.option(
    "--exclude-archived", is_flag=True, default=False, help="Hide archived conversations."
)
@click.option(
    "--unread", "with_unread", is_flag=True, default=False, help="Show unread counts."
)
@click.option(
    "--unread-only",
    is_flag=True,
    default=False,
    help="Only show conversations with unread messages.",
)
@_cursor_option
@_json_option
@click.pass_context
def list_conversations(
    ctx: click.Context,
    types: str,
    limit: int,
    exclude_archived: bool,
    with_unread: bool,
    unread_only: bool,
    cursor: str | None,
    as_json: bool,
) -> None:
    """List conversations."""
    pipeline = EnrichmentPipeline(get_client(workspace=ctx.obj["workspace"]))
    listing = pipeline.list_conversations(
        types,
        limit,
        exclude_archived=exclude_archived,
        cursor=cursor,
        with_unread=with_unread,
        unread_only=unread_only,
    )
    if as_json:
        _print_json(listing.to_dict())
    else:
        print_channels(listing)


@conversations.command()
@_types_option
@_limit_option
@_cursor_option
@_json_option
@click.pass_context
def unread(
    ctx: click.Context, types: str, limit: int, cursor: str | None, as_json: bool
) -> None:
    """List conversations with unread messages."""
    pipeline = EnrichmentPipeline(get_client(workspace=ctx.obj["workspace"]))
    listing = pipeline.list_unread(types, limit, cursor=cursor)
    if as_json:
        _print_json(listing.to_dict())
    else:
        print_channels(listing)


@conversations.command()
@click.argument("channel_id")
@click.option("--thread-ts", default=None, help="Read one thread by its timestamp.")
@click.option(
    "--exclude-replies",
    is_flag=True,
    default=False,
    help="Only top-level messages (ignored with --thread-ts).",
)
@click.option(
    "--limit",
    default=100,
    type=click.IntRange(1, 1000),
    show_default=True,
    help="Number of messages to return.",
)
@click.option(
    "--oldest", default=None, help='Start of range: a date or e.g. "7 days ago".'
)
@click.option(
    "--latest", default=None, help='End of range: a date or e.g. "1 day ago".'
)
@_cursor_option
@_json_option
@click.pass_context
def read(
    ctx: click.Context,
    channel_id: str,
    thread_ts: str | None,
    exclude_replies: bool,
    limit: int,
    oldest: str | None,
    latest: str | None,
    cursor: str | None,
    as_json: bool,
) -> None:
    """Read conversation history or a single thread."""
    pipeline = EnrichmentPipeline(get_client(workspace=ctx.obj["workspace"]))
    history = pipeline.read_conversation(
        channel_id,
        thread_ts=thread_ts,
        limit=limit,
        oldest=oldest,
        latest=latest,
        cursor=cursor,
        exclude_replies=exclude_replies,
        permalinks=not as_json,
    )
    if as_json:
        _print_json(history.to_dict())
    else:
        print_history(history)


# -- search -------------------------------------------------------------------


@cli.command()
@click.argument("query")
@click.option("--count", default=20, show_default=True, help="Results to return (1-100).")
@click.option(
    "--sort", default="score", show_default=True, help="Sort by 'score' or 'timestamp'."
)
@click.option("--channel", default=None, help="Only search this channel ID.")
@_json_option
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    count: int,
    sort: str,
    channel: str | None,
    as_json: bool,
) -> None:
    """Search messages across the workspace."""
    # Validate before resolving credentials so bad input never hits the store
    validate_search(query, count, sort)
    pipeline = EnrichmentPipeline(get_client(workspace=ctx.obj["workspace"]))
    results = pipeline.search_messages(query, count=count, sort=sort, channel=channel)
    if as_json:
        _print_json(results.to_dict())
    else:
        print_search(results)


if __name__ == "__main__":
    cli()
