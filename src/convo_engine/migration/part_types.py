from __future__ import annotations

import json
from typing import Any

from loguru import logger

# Older builds persisted the fully-qualified or nested class name as the part
# discriminator. Every spelling maps to the current short tag.
_LEGACY_NAMESPACE = "me.rerere.ai.ui."

_CURRENT_TAGS = {
    "Text": "text",
    "Image": "image",
    "Video": "video",
    "Audio": "audio",
    "Document": "document",
    "Reasoning": "reasoning",
    "Search": "search",
    "ToolCall": "tool_call",
    "ToolResult": "tool_result",
    "Tool": "tool",
}

PART_TYPE_MAPPING: dict[str, str] = {}
for _name, _tag in _CURRENT_TAGS.items():
    PART_TYPE_MAPPING[_name] = _tag
    PART_TYPE_MAPPING[f"UIMessagePart.{_name}"] = _tag
    PART_TYPE_MAPPING[f"{_LEGACY_NAMESPACE}UIMessagePart.{_name}"] = _tag


def migrate_parts(parts: list[Any]) -> list[Any]:
    """Rewrite part type tags, recursing into the ``output`` of tool parts.

    Returns the same list object when nothing changed.
    """
    changed = False
    migrated: list[Any] = []
    for part in parts:
        new_part = part
        if isinstance(part, dict):
            type_value = part.get("type")
            mapped = PART_TYPE_MAPPING.get(type_value) if isinstance(type_value, str) else None
            if mapped is not None and mapped != type_value:
                new_part = {**part, "type": mapped}

            output = new_part.get("output")
            if isinstance(output, list):
                migrated_output = migrate_parts(output)
                if migrated_output is not output:
                    new_part = {**new_part, "output": migrated_output}

        if new_part is not part:
            changed = True
        migrated.append(new_part)
    return migrated if changed else parts


def migrate_messages_element(element: Any) -> Any:
    """Normalize type tags in a decoded JSON array of messages."""
    if not isinstance(element, list):
        return element
    changed = False
    migrated: list[Any] = []
    for message in element:
        new_message = message
        if isinstance(message, dict) and isinstance(message.get("parts"), list):
            parts = message["parts"]
            migrated_parts = migrate_parts(parts)
            if migrated_parts is not parts:
                new_message = {**message, "parts": migrated_parts}
                changed = True
        migrated.append(new_message)
    return migrated if changed else element


def migrate_messages_json(messages_json: str) -> str:
    """Normalize type tags in a persisted messages string.

    Unparseable input is returned unchanged so a bad row never breaks a read.
    """
    try:
        element = json.loads(messages_json)
    except (json.JSONDecodeError, TypeError) as ex:
        logger.warning(f"Skipping type-tag migration of malformed messages JSON: {ex}")
        return messages_json
    migrated = migrate_messages_element(element)
    if migrated == element:
        return messages_json
    return json.dumps(migrated, ensure_ascii=False)
