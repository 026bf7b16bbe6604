"""Game notification parsing and tool-result text formatting.

Notifications arrive alongside command results in several shapes (plain
strings, chat messages, typed events whose `data` may itself be a JSON
string). They are normalized to a (tag, category, text) triple, logged for
the operator and rendered into the result text the model sees.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Event types whose tag is just the upper-cased type
_TYPED_EVENTS: dict[str, tuple[str, str]] = {
    "system": ("SYSTEM", "broadcast"),
    "tip": ("TIP", "system"),
    "combat": ("COMBAT", "combat"),
    "trade": ("TRADE", "trade"),
    "scan": ("SCAN", "info"),
    "ships": ("SHIPS", "info"),
    "local": ("LOCAL", "info"),
}


@dataclass(frozen=True)
class Notification:
    tag: str
    category: str
    text: str


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def parse_notification(raw: Any) -> Notification | None:
    """Normalize one raw notification. Returns None for unusable values."""
    if isinstance(raw, str):
        return Notification("EVENT", "info", raw)
    if not isinstance(raw, dict):
        return None

    kind = raw.get("type")
    msg_type = raw.get("msg_type")
    data = raw.get("data")

    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            pass

    if msg_type == "chat_message" and isinstance(data, dict):
        channel = data.get("channel") or "?"
        sender = data.get("sender") or "Unknown"
        content = data.get("content") or ""
        if sender == "[ADMIN]":
            return Notification("BROADCAST", "broadcast", content)
        if channel == "private":
            return Notification(f"DM from {sender}", "dm", content)
        return Notification(f"CHAT {str(channel).upper()}", "chat", f"{sender}: {content}")

    if kind in _TYPED_EVENTS and isinstance(data, dict):
        tag, category = _TYPED_EVENTS[kind]
        return Notification(tag, category, data.get("message") or _dumps(data))

    tag = str(kind or msg_type or "EVENT").upper()
    if isinstance(data, dict):
        text = data.get("message") or data.get("content") or _dumps(data)
    elif isinstance(data, str):
        text = data
    else:
        text = raw.get("message") or raw.get("content") or _dumps(raw)
    return Notification(tag, "info", str(text))


def log_notifications(notifications: list[Any]) -> None:
    """Surface notifications to the operator log."""
    if not notifications:
        return
    logger.debug("Received %d notification(s)", len(notifications))
    for raw in notifications:
        parsed = parse_notification(raw)
        if parsed is not None:
            logger.info("[%s] [%s] %s", parsed.category, parsed.tag, parsed.text)


def format_notifications(notifications: list[Any]) -> str:
    lines = []
    for raw in notifications or []:
        parsed = parse_notification(raw)
        if parsed is not None:
            lines.append(f"  > [{parsed.tag}] {parsed.text}")
    return "\n".join(lines)


def format_tool_result(result: Any, notifications: list[Any] | None = None) -> str:
    """Notifications block (if any) followed by the result.

    String results are passed through verbatim; anything else is rendered as
    indented JSON.
    """
    parts: list[str] = []
    if notifications:
        parts.append("Notifications:")
        parts.append(format_notifications(notifications))
        parts.append("")
    if isinstance(result, str):
        parts.append(result)
    else:
        parts.append(json.dumps(result, indent=2, default=str))
    return "\n".join(parts)
