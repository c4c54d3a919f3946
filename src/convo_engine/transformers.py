from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from convo_engine.merge import Clock
from convo_engine.models import Message, MessageRole, Part, Reasoning, Text, utc_now

TIME_GAP_THRESHOLD_SECONDS = 3600

_THINKING_RE = re.compile(r"<think>(.*?)(?:</think>|\Z)", re.DOTALL)
_CLOSING_TAG = "</think>"


@dataclass(frozen=True)
class TransformerContext:
    model: Any = None
    enable_time_reminder: bool = True


@runtime_checkable
class InputTransformer(Protocol):
    def transform(self, ctx: TransformerContext, messages: list[Message]) -> list[Message]: ...


@runtime_checkable
class OutputTransformer(Protocol):
    def visual_transform(self, ctx: TransformerContext, messages: list[Message]) -> list[Message]: ...

    def on_generation_finish(self, ctx: TransformerContext, messages: list[Message]) -> list[Message]: ...


# ---------------------------------------------------------------------------
# <think> tag extraction
# ---------------------------------------------------------------------------


def _split_think_tags(message: Message, finished_at: datetime | None, closed_at: datetime) -> Message:
    if message.role != MessageRole.ASSISTANT or not message.has_part(Text):
        return message

    parts: list[Part] = []
    changed = False
    for part in message.parts:
        if not isinstance(part, Text):
            parts.append(part)
            continue
        match = _THINKING_RE.search(part.text)
        if match is None:
            parts.append(part)
            continue
        changed = True
        if finished_at is None and _CLOSING_TAG in part.text:
            finished = closed_at
        else:
            finished = finished_at
        parts.append(
            Reasoning(
                reasoning=match.group(1).strip(),
                created_at=message.created_at,
                finished_at=finished,
            )
        )
        parts.append(replace(part, text=_THINKING_RE.sub("", part.text)))
    return replace(message, parts=tuple(parts)) if changed else message


class ThinkTagTransformer:
    """Moves inline ``<think>`` content into a reasoning part.

    Some providers stream their reasoning as tagged text instead of dedicated
    reasoning deltas. A tag that is still open while streaming yields an
    unfinished reasoning part.
    """

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock

    def visual_transform(self, ctx: TransformerContext, messages: list[Message]) -> list[Message]:
        now = self._clock()
        return [_split_think_tags(m, None, now) for m in messages]

    def on_generation_finish(self, ctx: TransformerContext, messages: list[Message]) -> list[Message]:
        now = self._clock()
        return [_split_think_tags(m, now, now) for m in messages]


# ---------------------------------------------------------------------------
# Time gap reminders
# ---------------------------------------------------------------------------


def format_gap(seconds: int) -> str:
    if seconds < 3600:
        return f"{seconds // 60} min"
    if seconds < 86400:
        return f"{seconds // 3600} h"
    return f"{seconds // 86400} d"


def build_time_reminder(gap_seconds: int, at: datetime) -> Message:
    local = at.astimezone()
    content = (
        f"<time_reminder>Current time: {local.strftime('%A')}, {local.strftime('%Y-%m-%d %H:%M')} "
        f"({format_gap(gap_seconds)} since last message)</time_reminder>"
    )
    return Message.user(content, created_at=at)


def apply_time_reminder(messages: list[Message]) -> list[Message]:
    """Insert a reminder message wherever consecutive messages are more than an hour apart."""
    result: list[Message] = []
    for i, current in enumerate(messages):
        if i > 0:
            gap_seconds = int((current.created_at - messages[i - 1].created_at).total_seconds())
            if gap_seconds > TIME_GAP_THRESHOLD_SECONDS:
                result.append(build_time_reminder(gap_seconds, current.created_at))
        result.append(current)
    return result


class TimeReminderTransformer:
    def transform(self, ctx: TransformerContext, messages: list[Message]) -> list[Message]:
        if not ctx.enable_time_reminder:
            return messages
        return apply_time_reminder(messages)
