from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from convo_engine.errors import UnknownPartTypeError


def utc_now() -> datetime:
    return datetime.now(UTC)


def _as_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    return value if isinstance(value, tuple) else tuple(value)


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    # Only produced when decoding old persisted data.
    TOOL = "tool"


# ---------------------------------------------------------------------------
# Approval state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Auto:
    pass


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Approved:
    pass


@dataclass(frozen=True)
class Denied:
    reason: str = ""


ApprovalState = Union[Auto, Pending, Approved, Denied]

AUTO = Auto()
PENDING = Pending()
APPROVED = Approved()


# ---------------------------------------------------------------------------
# Parts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Text:
    text: str
    metadata: dict | None = None


@dataclass(frozen=True)
class Image:
    url: str
    metadata: dict | None = None


@dataclass(frozen=True)
class Video:
    url: str
    metadata: dict | None = None


@dataclass(frozen=True)
class Audio:
    url: str
    metadata: dict | None = None


@dataclass(frozen=True)
class Document:
    url: str
    file_name: str
    mime: str = "text/*"
    metadata: dict | None = None


@dataclass(frozen=True)
class Reasoning:
    reasoning: str
    created_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    metadata: dict | None = None


@dataclass(frozen=True)
class Tool:
    tool_call_id: str
    tool_name: str
    input: str
    output: tuple[Part, ...] = ()
    approval_state: ApprovalState = AUTO
    metadata: dict | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "output", _as_tuple(self.output))

    @property
    def is_executed(self) -> bool:
        return len(self.output) > 0

    @property
    def is_pending(self) -> bool:
        return isinstance(self.approval_state, Pending)

    def input_as_json(self) -> Any:
        """Parse ``input`` as JSON. Blank or invalid input yields an empty object."""
        try:
            return json.loads(self.input if self.input.strip() else "{}")
        except json.JSONDecodeError:
            return {}

    def merge(self, other: Tool) -> Tool:
        # Approval decisions are never overwritten by streamed content.
        return Tool(
            tool_call_id=self.tool_call_id,
            tool_name=self.tool_name + other.tool_name,
            input=self.input + other.input,
            output=self.output + other.output,
            approval_state=self.approval_state,
            metadata=other.metadata if other.metadata is not None else self.metadata,
        )


# Deprecated variants. They are decoded from old persisted data so the
# migrator can rewrite them, and are never produced by the merge engine.


@dataclass(frozen=True)
class Search:
    metadata: dict | None = None


@dataclass(frozen=True)
class ToolCall:
    tool_call_id: str
    tool_name: str
    arguments: str
    approval_state: ApprovalState = AUTO
    metadata: dict | None = None


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    tool_name: str
    content: Any
    arguments: Any
    metadata: dict | None = None


Part = Union[Text, Image, Video, Audio, Document, Reasoning, Tool, Search, ToolCall, ToolResult]

MEDIA_PART_TYPES = (Image, Video, Audio, Document)


@dataclass(frozen=True)
class UrlCitation:
    title: str
    url: str


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    role: MessageRole
    parts: tuple[Part, ...] = ()
    annotations: tuple[UrlCitation, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    model_id: str | None = None
    usage: TokenUsage | None = None
    translation: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", MessageRole(self.role))
        object.__setattr__(self, "parts", _as_tuple(self.parts))
        object.__setattr__(self, "annotations", _as_tuple(self.annotations))

    @classmethod
    def system(cls, prompt: str, **kwargs: Any) -> Message:
        return cls(role=MessageRole.SYSTEM, parts=(Text(prompt),), **kwargs)

    @classmethod
    def user(cls, prompt: str, **kwargs: Any) -> Message:
        return cls(role=MessageRole.USER, parts=(Text(prompt),), **kwargs)

    @classmethod
    def assistant(cls, prompt: str, **kwargs: Any) -> Message:
        return cls(role=MessageRole.ASSISTANT, parts=(Text(prompt),), **kwargs)

    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, Text))

    def summary_as_text(self) -> str:
        return f"[{self.role.name}]: " + self.text()

    def tools(self) -> list[Tool]:
        return [p for p in self.parts if isinstance(p, Tool)]

    def has_part(self, part_type: type) -> bool:
        return any(isinstance(p, part_type) for p in self.parts)

    def has_base64_part(self) -> bool:
        return any(isinstance(p, Image) and p.url.startswith("data:") for p in self.parts)

    def is_valid_to_upload(self) -> bool:
        for part in self.parts:
            if isinstance(part, Text):
                if part.text.strip():
                    return True
            elif isinstance(part, MEDIA_PART_TYPES):
                if part.url.strip():
                    return True
            elif isinstance(part, Reasoning):
                if part.reasoning.strip():
                    return True
            else:
                return True
        return False


def _has_visible_content(part: Part, *, include_reasoning: bool) -> bool:
    if isinstance(part, Text):
        return bool(part.text.strip())
    if isinstance(part, MEDIA_PART_TYPES):
        return bool(part.url.strip())
    if include_reasoning and isinstance(part, Reasoning):
        return bool(part.reasoning.strip())
    return False


def is_empty_input_message(parts: tuple[Part, ...] | list[Part]) -> bool:
    """True when the parts carry nothing a user could have typed or attached."""
    return not any(_has_visible_content(p, include_reasoning=False) for p in parts)


def is_empty_ui_message(parts: tuple[Part, ...] | list[Part]) -> bool:
    """True when the parts would render as nothing."""
    return not any(_has_visible_content(p, include_reasoning=True) for p in parts)


def truncate(messages: list[Message], index: int) -> list[Message]:
    if index < 0 or index >= len(messages):
        return messages
    return messages[index:]


# ---------------------------------------------------------------------------
# Stream chunks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageChoice:
    index: int = 0
    delta: Message | None = None
    message: Message | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class MessageChunk:
    id: str
    model: str
    choices: tuple[MessageChoice, ...] = ()
    usage: TokenUsage | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", _as_tuple(self.choices))


# ---------------------------------------------------------------------------
# Persisted JSON codec
# ---------------------------------------------------------------------------


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    # Old rows stored local wall-clock time without an offset.
    return parsed if parsed.tzinfo is not None else parsed.astimezone()


def approval_to_dict(state: ApprovalState) -> dict:
    if isinstance(state, Denied):
        return {"type": "denied", "reason": state.reason}
    if isinstance(state, Pending):
        return {"type": "pending"}
    if isinstance(state, Approved):
        return {"type": "approved"}
    return {"type": "auto"}


def approval_from_dict(data: Any) -> ApprovalState:
    if not isinstance(data, dict):
        return AUTO
    tag = data.get("type")
    if tag == "pending":
        return PENDING
    if tag == "approved":
        return APPROVED
    if tag == "denied":
        return Denied(reason=str(data.get("reason", "")))
    return AUTO


def part_to_dict(part: Part) -> dict:
    if isinstance(part, Text):
        data: dict[str, Any] = {"type": "text", "text": part.text}
    elif isinstance(part, Image):
        data = {"type": "image", "url": part.url}
    elif isinstance(part, Video):
        data = {"type": "video", "url": part.url}
    elif isinstance(part, Audio):
        data = {"type": "audio", "url": part.url}
    elif isinstance(part, Document):
        data = {"type": "document", "url": part.url, "fileName": part.file_name, "mime": part.mime}
    elif isinstance(part, Reasoning):
        data = {
            "type": "reasoning",
            "reasoning": part.reasoning,
            "createdAt": _dt_to_str(part.created_at),
            "finishedAt": _dt_to_str(part.finished_at),
        }
    elif isinstance(part, Tool):
        data = {
            "type": "tool",
            "toolCallId": part.tool_call_id,
            "toolName": part.tool_name,
            "input": part.input,
            "output": [part_to_dict(p) for p in part.output],
            "approvalState": approval_to_dict(part.approval_state),
        }
    elif isinstance(part, ToolCall):
        data = {
            "type": "tool_call",
            "toolCallId": part.tool_call_id,
            "toolName": part.tool_name,
            "arguments": part.arguments,
            "approvalState": approval_to_dict(part.approval_state),
        }
    elif isinstance(part, ToolResult):
        data = {
            "type": "tool_result",
            "toolCallId": part.tool_call_id,
            "toolName": part.tool_name,
            "content": part.content,
            "arguments": part.arguments,
        }
    elif isinstance(part, Search):
        data = {"type": "search"}
    else:
        raise UnknownPartTypeError(type(part).__name__)
    data["metadata"] = part.metadata
    return data


def part_from_dict(data: dict) -> Part:
    tag = data.get("type")
    metadata = data.get("metadata")
    if tag == "text":
        return Text(text=data.get("text", ""), metadata=metadata)
    if tag == "image":
        return Image(url=data.get("url", ""), metadata=metadata)
    if tag == "video":
        return Video(url=data.get("url", ""), metadata=metadata)
    if tag == "audio":
        return Audio(url=data.get("url", ""), metadata=metadata)
    if tag == "document":
        return Document(
            url=data.get("url", ""),
            file_name=data.get("fileName", ""),
            mime=data.get("mime", "text/*"),
            metadata=metadata,
        )
    if tag == "reasoning":
        return Reasoning(
            reasoning=data.get("reasoning", ""),
            created_at=_dt_from_str(data.get("createdAt")) or utc_now(),
            finished_at=_dt_from_str(data.get("finishedAt")),
            metadata=metadata,
        )
    if tag == "tool":
        return Tool(
            tool_call_id=data.get("toolCallId", ""),
            tool_name=data.get("toolName", ""),
            input=data.get("input", ""),
            output=tuple(part_from_dict(p) for p in data.get("output") or []),
            approval_state=approval_from_dict(data.get("approvalState")),
            metadata=metadata,
        )
    if tag == "tool_call":
        return ToolCall(
            tool_call_id=data.get("toolCallId", ""),
            tool_name=data.get("toolName", ""),
            arguments=data.get("arguments", ""),
            approval_state=approval_from_dict(data.get("approvalState")),
            metadata=metadata,
        )
    if tag == "tool_result":
        return ToolResult(
            tool_call_id=data.get("toolCallId", ""),
            tool_name=data.get("toolName", ""),
            content=data.get("content"),
            arguments=data.get("arguments"),
            metadata=metadata,
        )
    if tag == "search":
        return Search(metadata=metadata)
    raise UnknownPartTypeError(tag)


def message_to_dict(message: Message) -> dict:
    return {
        "id": message.id,
        "role": message.role.value,
        "parts": [part_to_dict(p) for p in message.parts],
        "annotations": [
            {"type": "url_citation", "title": a.title, "url": a.url} for a in message.annotations
        ],
        "createdAt": _dt_to_str(message.created_at),
        "finishedAt": _dt_to_str(message.finished_at),
        "modelId": message.model_id,
        "usage": (
            {
                "promptTokens": message.usage.prompt_tokens,
                "completionTokens": message.usage.completion_tokens,
                "cachedTokens": message.usage.cached_tokens,
                "totalTokens": message.usage.total_tokens,
            }
            if message.usage is not None
            else None
        ),
        "translation": message.translation,
    }


def message_from_dict(data: dict) -> Message:
    usage_data = data.get("usage")
    usage = None
    if isinstance(usage_data, dict):
        usage = TokenUsage(
            prompt_tokens=int(usage_data.get("promptTokens", 0)),
            completion_tokens=int(usage_data.get("completionTokens", 0)),
            cached_tokens=int(usage_data.get("cachedTokens", 0)),
            total_tokens=int(usage_data.get("totalTokens", 0)),
        )
    annotations = tuple(
        UrlCitation(title=a.get("title", ""), url=a.get("url", ""))
        for a in data.get("annotations") or []
        if isinstance(a, dict) and a.get("type", "url_citation") == "url_citation"
    )
    kwargs: dict[str, Any] = {}
    if data.get("id"):
        kwargs["id"] = str(data["id"])
    created_at = _dt_from_str(data.get("createdAt"))
    if created_at is not None:
        kwargs["created_at"] = created_at
    return Message(
        role=MessageRole(str(data.get("role", "user")).lower()),
        parts=tuple(part_from_dict(p) for p in data.get("parts") or []),
        annotations=annotations,
        finished_at=_dt_from_str(data.get("finishedAt")),
        model_id=data.get("modelId"),
        usage=usage,
        translation=data.get("translation"),
        **kwargs,
    )


def messages_to_json(messages: list[Message]) -> str:
    return json.dumps([message_to_dict(m) for m in messages], ensure_ascii=False)


def messages_from_json(text: str) -> list[Message]:
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("Persisted messages must be a JSON array")
    return [message_from_dict(m) for m in data]
