"""Unify legacy tool call/result parts into ``Tool`` parts.

Old conversations stored a tool invocation as a ``ToolCall`` part on the
assistant message and the result as a ``ToolResult`` part on a separate
TOOL-role message (or a whole TOOL node). The current model keeps the call
and its output on a single ``Tool`` part of the assistant message.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import replace
from typing import TypeVar

from loguru import logger

from convo_engine.models import (
    MEDIA_PART_TYPES,
    Message,
    MessageRole,
    Part,
    Reasoning,
    Text,
    Tool,
    ToolCall,
    ToolResult,
)

T = TypeVar("T")


def _sort_priority(part: Part) -> int:
    if isinstance(part, Reasoning):
        return -1
    if isinstance(part, MEDIA_PART_TYPES):
        return 1
    return 0


def sort_parts_for_migration(parts: tuple[Part, ...] | list[Part]) -> tuple[Part, ...]:
    """Reasoning first, media last. Only for one-time migration of old rows.

    Left untouched when a message has several text or reasoning parts, since
    their interleaving carries meaning.
    """
    parts = tuple(parts)
    reasoning_count = sum(1 for p in parts if isinstance(p, Reasoning))
    text_count = sum(1 for p in parts if isinstance(p, Text))
    if reasoning_count > 1 or text_count > 1:
        return parts
    return tuple(sorted(parts, key=_sort_priority))


def _result_output(result: ToolResult) -> tuple[Part, ...]:
    return (Text(json.dumps(result.content, ensure_ascii=False, separators=(",", ":"))),)


def _tool_from_call(call: ToolCall, output: tuple[Part, ...] = ()) -> Tool:
    return Tool(
        tool_call_id=call.tool_call_id,
        tool_name=call.tool_name,
        input=call.arguments,
        output=output,
        approval_state=call.approval_state,
        metadata=call.metadata,
    )


def _find_result(results: list[ToolResult], tool_call_id: str) -> ToolResult | None:
    return next((r for r in results if r.tool_call_id == tool_call_id), None)


def _apply_results(parts: tuple[Part, ...], results: list[ToolResult]) -> tuple[Part, ...]:
    applied: list[Part] = []
    for part in parts:
        if isinstance(part, Tool) and not part.is_executed:
            match = _find_result(results, part.tool_call_id)
            if match is not None:
                part = replace(part, output=_result_output(match))
        elif isinstance(part, ToolCall):
            match = _find_result(results, part.tool_call_id)
            part = _tool_from_call(part, _result_output(match) if match is not None else ())
        applied.append(part)
    return tuple(applied)


def migrate_message_parts(message: Message) -> Message:
    """Convert ``ToolCall`` parts and fold any in-message ``ToolResult`` parts."""
    results = [p for p in message.parts if isinstance(p, ToolResult)]
    parts = _apply_results(message.parts, results)
    if results:
        parts = tuple(p for p in parts if not isinstance(p, ToolResult))
    parts = sort_parts_for_migration(parts)
    return message if parts == message.parts else replace(message, parts=parts)


def _merge_results_into(message: Message, results: list[ToolResult]) -> Message:
    parts = sort_parts_for_migration(_apply_results(message.parts, results))
    return message if parts == message.parts else replace(message, parts=parts)


def migrate_tool_messages(messages: list[Message]) -> list[Message]:
    """Drop TOOL-role messages, merging their results into the preceding assistant message."""
    result: list[Message] = []
    for message in messages:
        if message.role == MessageRole.TOOL:
            tool_results = [p for p in message.parts if isinstance(p, ToolResult)]
            if result and result[-1].role == MessageRole.ASSISTANT:
                result[-1] = _merge_results_into(result[-1], tool_results)
            elif tool_results:
                logger.debug(f"Discarding {len(tool_results)} tool result(s) with no preceding assistant message")
            continue
        result.append(migrate_message_parts(message))
    return result


def migrate_tool_nodes(
    nodes: list[T],
    get_messages: Callable[[T], list[Message]],
    set_messages: Callable[[T, list[Message]], T],
) -> list[T]:
    """Node-level variant of :func:`migrate_tool_messages`.

    A node holds one or more candidate messages for one position in the
    conversation. A node containing a TOOL message is folded into the
    immediately preceding assistant node and never kept.
    """
    result: list[T] = []
    for node in nodes:
        messages = get_messages(node)
        is_tool_node = any(m.role == MessageRole.TOOL for m in messages)

        if is_tool_node:
            previous = get_messages(result[-1]) if result else []
            if any(m.role == MessageRole.ASSISTANT for m in previous):
                tool_results = [
                    p for m in messages for p in m.parts if isinstance(p, ToolResult)
                ]
                updated = [
                    _merge_results_into(m, tool_results) if m.role == MessageRole.ASSISTANT else m
                    for m in previous
                ]
                result[-1] = set_messages(result[-1], updated)
                continue

            remaining = migrate_tool_messages(messages)
            if remaining:
                result.append(set_messages(node, remaining))
            else:
                logger.debug("Dropping tool node with no preceding assistant node")
            continue

        result.append(set_messages(node, migrate_tool_messages(messages)))
    return result
