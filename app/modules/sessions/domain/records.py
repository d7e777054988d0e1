from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UNKNOWN_USER_AGENT = "Unknown"

SESSION_NOT_FOUND = "session_not_found"
SESSION_EXPIRED = "session_expired"
SESSION_IDLE_TIMEOUT = "session_idle_timeout"
SESSION_ABSOLUTE_TIMEOUT = "session_absolute_timeout"
STORE_UNAVAILABLE = "store_unavailable"

SESSION_INVALID_REASONS = frozenset(
    {SESSION_NOT_FOUND, SESSION_EXPIRED, SESSION_IDLE_TIMEOUT, SESSION_ABSOLUTE_TIMEOUT}
)

# Ordered: the first matching pattern wins.
_DEVICE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"ipad|tablet", re.IGNORECASE), "Tablet"),
    (re.compile(r"mobile|iphone|android", re.IGNORECASE), "Mobile"),
)
_BROWSER_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"edg", re.IGNORECASE), "Edge"),
    (re.compile(r"chrome|crios", re.IGNORECASE), "Chrome"),
    (re.compile(r"firefox|fxios", re.IGNORECASE), "Firefox"),
    (re.compile(r"safari", re.IGNORECASE), "Safari"),
)
_OS_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"windows", re.IGNORECASE), "Windows"),
    (re.compile(r"mac os x|macintosh", re.IGNORECASE), "macOS"),
    (re.compile(r"android", re.IGNORECASE), "Android"),
    (re.compile(r"iphone|ipad|ios", re.IGNORECASE), "iOS"),
    (re.compile(r"linux", re.IGNORECASE), "Linux"),
)


def _first_match(
    user_agent: str, patterns: tuple[tuple[re.Pattern[str], str], ...], default: str
) -> str:
    for pattern, label in patterns:
        if pattern.search(user_agent):
            return label
    return default


def device_label(user_agent: str) -> str:
    return _first_match(user_agent, _DEVICE_PATTERNS, "Desktop")


def browser_label(user_agent: str) -> str:
    return _first_match(user_agent, _BROWSER_PATTERNS, "Browser")


def os_label(user_agent: str) -> str:
    return _first_match(user_agent, _OS_PATTERNS, "OS")


@dataclass(frozen=True, slots=True)
class DeviceFingerprint:
    device: str
    browser: str
    os: str


def classify_user_agent(user_agent: Optional[str]) -> DeviceFingerprint:
    ua = user_agent or UNKNOWN_USER_AGENT
    return DeviceFingerprint(
        device=device_label(ua),
        browser=browser_label(ua),
        os=os_label(ua),
    )


def normalize_action(action: Optional[str]) -> Optional[str]:
    """Strip the query string from a request path; empty input yields None."""
    if not action:
        return None
    normalized = action.split("?", 1)[0]
    return normalized or None


class SessionRecord(BaseModel):
    """
    Ephemeral admin session as stored in the shared TTL store.

    Serialized with camelCase keys so records written by other portal
    services stay readable.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    user_id: str
    email: str
    ip: str = ""
    user_agent: str = UNKNOWN_USER_AGENT
    device: str = "Desktop"
    browser: str = "Browser"
    os: str = "OS"
    created_at: datetime
    last_seen: datetime
    expires_at: Optional[datetime] = None
    actions: list[str] = Field(default_factory=list)

    def apply_user_agent(self, user_agent: str) -> None:
        fingerprint = classify_user_agent(user_agent)
        self.user_agent = user_agent
        self.device = fingerprint.device
        self.browser = fingerprint.browser
        self.os = fingerprint.os

    def record_action(self, action: Optional[str], max_actions: int) -> None:
        normalized = normalize_action(action)
        if not normalized:
            return
        history = [normalized, *(item for item in self.actions if item != normalized)]
        self.actions = history[:max_actions]

    @property
    def fingerprint(self) -> DeviceFingerprint:
        return DeviceFingerprint(device=self.device, browser=self.browser, os=self.os)


@dataclass(frozen=True, slots=True)
class SessionContext:
    """Request-derived identity used to refresh or re-create a session."""

    user_id: str
    email: str
    ip: str = ""
    user_agent: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class SessionValidation:
    valid: bool
    reason: Optional[str] = None
    record: Optional[SessionRecord] = None


class SessionView(BaseModel):
    """Client-facing projection of a session, used by the session listing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    user_id: str
    email: str
    ip: str
    user_agent: str
    device: str
    browser: str
    os: str
    login_time: datetime
    last_activity: datetime
    expires_at: Optional[datetime] = None
    is_active: bool
    is_current_session: bool
    risk_score: Literal["low", "medium", "high"]
    actions: list[str]
