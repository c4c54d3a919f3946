"""Fold streamed chunks into the conversation model.

Every function here is pure: it returns new ``Message`` values and never
mutates its inputs. Chunks must be applied in arrival order.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from loguru import logger

from convo_engine.errors import ContractViolation
from convo_engine.models import (
    Image,
    Message,
    MessageChoice,
    MessageChunk,
    Part,
    Reasoning,
    Text,
    Tool,
    utc_now,
)

Clock = Callable[[], datetime]

IMAGE_DATA_URI_PREFIX = "data:image/png;base64,"


def extract_choice(chunk: MessageChunk) -> tuple[MessageChoice, Message]:
    """Return the first choice and its payload, enforcing the delta/message contract."""
    if not chunk.choices:
        raise ContractViolation(chunk.id, "chunk has no choices")
    choice = chunk.choices[0]
    if choice.delta is None and choice.message is None:
        raise ContractViolation(chunk.id, "choice carries neither delta nor message")
    if choice.delta is not None and choice.message is not None:
        raise ContractViolation(chunk.id, "choice carries both delta and message")
    payload = choice.delta if choice.delta is not None else choice.message
    return choice, payload


def _fold_text(parts: list[Part], delta: Text) -> list[Part]:
    if not delta.text:
        return parts
    last = parts[-1] if parts else None
    if isinstance(last, Text):
        return parts[:-1] + [replace(last, text=last.text + delta.text)]
    return parts + [delta]


def _fold_image(parts: list[Part], delta: Image) -> list[Part]:
    last = parts[-1] if parts else None
    if isinstance(last, Image):
        merged = replace(
            last,
            url=last.url + delta.url,
            metadata=delta.metadata if delta.metadata is not None else last.metadata,
        )
        return parts[:-1] + [merged]
    return parts + [Image(url=IMAGE_DATA_URI_PREFIX + delta.url, metadata=delta.metadata)]


def _fold_reasoning(parts: list[Part], delta: Reasoning) -> list[Part]:
    if not delta.reasoning and delta.metadata is None:
        return parts
    last = parts[-1] if parts else None
    if isinstance(last, Reasoning):
        merged = Reasoning(
            reasoning=last.reasoning + delta.reasoning,
            created_at=last.created_at,
            finished_at=None,
            metadata=delta.metadata if delta.metadata is not None else last.metadata,
        )
        return parts[:-1] + [merged]
    return parts + [delta]


def _fold_tool(parts: list[Part], delta: Tool) -> list[Part]:
    if not delta.tool_call_id.strip():
        # Name/arguments can stream before the id is known.
        target = None
        for i in range(len(parts) - 1, -1, -1):
            part = parts[i]
            if isinstance(part, Tool) and not part.tool_call_id.strip():
                target = i
                break
    else:
        target = next(
            (
                i
                for i, part in enumerate(parts)
                if isinstance(part, Tool) and part.tool_call_id == delta.tool_call_id
            ),
            None,
        )
    if target is None:
        return parts + [replace(delta)]
    merged = parts[:]
    merged[target] = parts[target].merge(delta)
    return merged


def _fold_part(parts: list[Part], delta_part: Part) -> list[Part]:
    if isinstance(delta_part, Text):
        return _fold_text(parts, delta_part)
    if isinstance(delta_part, Image):
        return _fold_image(parts, delta_part)
    if isinstance(delta_part, Reasoning):
        return _fold_reasoning(parts, delta_part)
    if isinstance(delta_part, Tool):
        return _fold_tool(parts, delta_part)
    logger.warning(f"Delta part not supported for merge, ignoring: {type(delta_part).__name__}")
    return parts


def _close_latest_reasoning(parts: list[Part], now: datetime) -> list[Part]:
    for i in range(len(parts) - 1, -1, -1):
        part = parts[i]
        if isinstance(part, Reasoning) and part.finished_at is None:
            closed = parts[:]
            closed[i] = replace(part, finished_at=now)
            return closed
    return parts


def merge_chunk(message: Message, chunk: MessageChunk, *, clock: Clock = utc_now) -> Message:
    """Fold one chunk's payload into ``message`` and return the new value."""
    _, delta = extract_choice(chunk)

    parts = list(message.parts)
    for delta_part in delta.parts:
        parts = _fold_part(parts, delta_part)

    # A provider that stops emitting reasoning has finished thinking.
    had_reasoning = any(isinstance(p, Reasoning) for p in message.parts)
    delta_has_reasoning = any(isinstance(p, Reasoning) for p in delta.parts)
    if had_reasoning and not delta_has_reasoning:
        parts = _close_latest_reasoning(parts, clock())

    # Vendors resend the full citation set.
    annotations = delta.annotations if delta.annotations else message.annotations

    changes: dict[str, Any] = {"parts": tuple(parts), "annotations": annotations}
    if chunk.usage is not None:
        changes["usage"] = chunk.usage
    return replace(message, **changes)


def merge(
    history: list[Message],
    chunk: MessageChunk,
    model_hint: str | None = None,
    *,
    clock: Clock = utc_now,
) -> list[Message]:
    """Apply ``chunk`` to the conversation and return the new message list.

    A role change starts a new message tagged with ``model_hint``; otherwise
    the chunk is folded into the last message.
    """
    if not history:
        raise ValueError("history must not be empty")
    _, incoming = extract_choice(chunk)

    last = history[-1]
    if last.role != incoming.role:
        fresh = replace(incoming, model_id=model_hint) if model_hint is not None else incoming
        if chunk.usage is not None:
            fresh = replace(fresh, usage=chunk.usage)
        return list(history) + [fresh]

    return list(history[:-1]) + [merge_chunk(last, chunk, clock=clock)]


def handle_message_chunk(
    history: list[Message],
    chunk: MessageChunk,
    model: Any | None = None,
    *,
    clock: Clock = utc_now,
) -> list[Message]:
    """Same as :func:`merge`, taking the model hint from ``model.id``."""
    return merge(history, chunk, model.id if model is not None else None, clock=clock)


def finish_reasoning(message: Message, *, clock: Clock = utc_now) -> Message:
    """Close every still-open reasoning part, e.g. on cancel or explicit stop."""
    if not any(isinstance(p, Reasoning) and p.finished_at is None for p in message.parts):
        return message
    now = clock()
    return replace(
        message,
        parts=tuple(
            replace(p, finished_at=now) if isinstance(p, Reasoning) and p.finished_at is None else p
            for p in message.parts
        ),
    )


def finish_message(message: Message, *, clock: Clock = utc_now) -> Message:
    finished = finish_reasoning(message, clock=clock)
    if finished.finished_at is not None:
        return finished
    return replace(finished, finished_at=clock())
