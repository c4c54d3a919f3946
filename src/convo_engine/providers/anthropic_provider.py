from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import anthropic
from loguru import logger
from tenacity import retry

from convo_engine.models import (
    Audio,
    Document,
    Image,
    Message,
    MessageChoice,
    MessageChunk,
    MessageRole,
    Part,
    Reasoning,
    Text,
    TokenUsage,
    Tool,
    Video,
)
from convo_engine.provider import AnthropicSetting, ModelAbility, TextGenerationParams
from convo_engine.providers.common import (
    default_retry_kwargs,
    is_remote_url,
    output_as_text,
    parse_data_uri,
    split_tool_rounds,
)
from convo_engine.tool import Tool as ToolSpec

DEFAULT_MAX_TOKENS = 4096
CACHE_CONTROL = {"type": "ephemeral"}


def _image_block(url: str) -> dict | None:
    data_uri = parse_data_uri(url)
    if data_uri is not None:
        media_type, data = data_uri
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
    if is_remote_url(url):
        return {"type": "image", "source": {"type": "url", "url": url}}
    logger.debug(f"Skipping image with unresolved attachment reference: {url[:64]}")
    return None


def _document_block(part: Document) -> dict | None:
    data_uri = parse_data_uri(part.url)
    if data_uri is not None:
        media_type, data = data_uri
        if media_type == "application/pdf":
            source = {"type": "base64", "media_type": media_type, "data": data}
        else:
            logger.debug(f"Skipping non-PDF inline document {part.file_name}")
            return None
    elif is_remote_url(part.url):
        source = {"type": "url", "url": part.url}
    else:
        logger.debug(f"Skipping document with unresolved attachment reference: {part.file_name}")
        return None
    return {"type": "document", "source": source, "title": part.file_name}


def _content_blocks(parts: tuple[Part, ...]) -> list[dict]:
    blocks: list[dict] = []
    for part in parts:
        block: dict | None = None
        if isinstance(part, Text):
            if part.text.strip():
                block = {"type": "text", "text": part.text}
        elif isinstance(part, Image):
            block = _image_block(part.url)
        elif isinstance(part, Document):
            block = _document_block(part)
        elif isinstance(part, (Video, Audio)):
            logger.debug(f"Claude does not accept {type(part).__name__.lower()} input, skipping part")
        if block is not None:
            blocks.append(block)
    return blocks


def _assistant_blocks(parts: tuple[Part, ...]) -> tuple[list[dict], list[dict]]:
    """Return (assistant content, tool_result blocks for the following user turn)."""
    content: list[dict] = []
    results: list[dict] = []
    for part in parts:
        if isinstance(part, Text):
            if part.text.strip():
                content.append({"type": "text", "text": part.text})
        elif isinstance(part, Reasoning):
            # Thinking blocks are only replayable with their signature.
            signature = (part.metadata or {}).get("signature")
            if signature and part.reasoning:
                content.append({"type": "thinking", "thinking": part.reasoning, "signature": signature})
        elif isinstance(part, Tool):
            # Unexecuted calls are still awaiting approval or execution.
            if not part.is_executed:
                continue
            content.append({
                "type": "tool_use",
                "id": part.tool_call_id,
                "name": part.tool_name,
                "input": part.input_as_json(),
            })
            results.append({
                "type": "tool_result",
                "tool_use_id": part.tool_call_id,
                "content": _content_blocks(part.output) or output_as_text(part.output),
            })
        elif isinstance(part, Image):
            block = _image_block(part.url)
            if block is not None:
                content.append(block)
    return content, results


def _to_anthropic_messages(messages: list[Message]) -> tuple[list[dict], list[dict]]:
    """Convert the conversation into (system blocks, messages)."""
    system: list[dict] = []
    out: list[dict] = []
    for message in messages:
        if message.role == MessageRole.SYSTEM:
            system.extend(
                {"type": "text", "text": p.text} for p in message.parts if isinstance(p, Text) and p.text.strip()
            )
        elif message.role == MessageRole.USER:
            content = _content_blocks(message.parts)
            if content:
                out.append({"role": "user", "content": content})
        elif message.role == MessageRole.ASSISTANT:
            for round_parts in split_tool_rounds(message.parts):
                content, results = _assistant_blocks(round_parts)
                if content:
                    out.append({"role": "assistant", "content": content})
                if results:
                    out.append({"role": "user", "content": results})
        else:
            logger.debug(f"Skipping legacy {message.role.value} message {message.id}")
    return system, out


def _is_genuine_user_message(wire_message: dict) -> bool:
    if wire_message.get("role") != "user":
        return False
    return not any(block.get("type") == "tool_result" for block in wire_message.get("content", []))


def _apply_cache_control(request: dict) -> None:
    system = request.get("system")
    if system:
        system[-1]["cache_control"] = dict(CACHE_CONTROL)

    tools = request.get("tools")
    if tools:
        tools[-1]["cache_control"] = dict(CACHE_CONTROL)

    # The newest user turn may still be edited or retried, so the breakpoint
    # goes on the one before it.
    user_indices = [i for i, m in enumerate(request["messages"]) if _is_genuine_user_message(m)]
    if len(user_indices) >= 2:
        content = request["messages"][user_indices[-2]]["content"]
        content[-1]["cache_control"] = dict(CACHE_CONTROL)


class AnthropicStreamAdapter:
    """Translates raw Messages API stream events into ``MessageChunk`` values."""

    def __init__(self, model: str):
        self._model = model
        self._message_id = ""
        self._tool_ids: dict[int, str] = {}
        self._input_tokens = 0
        self._cached_tokens = 0

    def _chunk(
        self,
        parts: tuple[Part, ...] = (),
        *,
        finish_reason: str | None = None,
        usage: TokenUsage | None = None,
    ) -> MessageChunk:
        delta = Message(role=MessageRole.ASSISTANT, parts=parts)
        return MessageChunk(
            id=self._message_id,
            model=self._model,
            choices=(MessageChoice(index=0, delta=delta, finish_reason=finish_reason),),
            usage=usage,
        )

    def feed(self, event: Any) -> MessageChunk | None:
        event_type = getattr(event, "type", None)

        if event_type == "message_start":
            self._message_id = event.message.id
            self._model = getattr(event.message, "model", None) or self._model
            usage = getattr(event.message, "usage", None)
            if usage is not None:
                self._input_tokens = getattr(usage, "input_tokens", 0) or 0
                self._cached_tokens = getattr(usage, "cache_read_input_tokens", 0) or 0
            return self._chunk()

        if event_type == "content_block_start":
            block = event.content_block
            if block.type == "text":
                return self._chunk((Text(block.text),))
            if block.type == "thinking":
                return self._chunk((Reasoning(block.thinking),))
            if block.type == "tool_use":
                self._tool_ids[event.index] = block.id
                return self._chunk((Tool(tool_call_id=block.id, tool_name=block.name, input=""),))
            return None

        if event_type == "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                return self._chunk((Text(delta.text),))
            if delta.type == "thinking_delta":
                return self._chunk((Reasoning(delta.thinking),))
            if delta.type == "signature_delta":
                return self._chunk((Reasoning("", metadata={"signature": delta.signature}),))
            if delta.type == "input_json_delta":
                tool_call_id = self._tool_ids.get(event.index, "")
                return self._chunk((Tool(tool_call_id=tool_call_id, tool_name="", input=delta.partial_json),))
            return None

        if event_type == "message_delta":
            output_tokens = getattr(getattr(event, "usage", None), "output_tokens", 0) or 0
            usage = TokenUsage(
                prompt_tokens=self._input_tokens,
                completion_tokens=output_tokens,
                cached_tokens=self._cached_tokens,
                total_tokens=self._input_tokens + output_tokens,
            )
            return self._chunk(finish_reason=event.delta.stop_reason, usage=usage)

        return None


class AnthropicProvider:
    def __init__(self, client: anthropic.AsyncAnthropic | None = None):
        self._client = client
        # One client per (api_key, base_url) when none was injected.
        self._clients: dict[tuple[str, str | None], anthropic.AsyncAnthropic] = {}

    def _client_for(self, setting: AnthropicSetting) -> anthropic.AsyncAnthropic:
        if self._client is not None:
            return self._client
        key = (setting.api_key, setting.base_url)
        if key not in self._clients:
            self._clients[key] = anthropic.AsyncAnthropic(api_key=setting.api_key, base_url=setting.base_url)
        return self._clients[key]

    def convert_tools(self, tools: tuple[ToolSpec, ...] | list[ToolSpec]) -> list[dict]:
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.input_schema,
            }
            for t in tools
        ]

    def build_message_request(
        self,
        setting: AnthropicSetting,
        messages: list[Message],
        params: TextGenerationParams,
        stream: bool = False,
    ) -> dict:
        system, wire_messages = _to_anthropic_messages(messages)
        request: dict[str, Any] = {
            "model": params.model.model_id,
            "messages": wire_messages,
            "max_tokens": params.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if system:
            request["system"] = system
        if params.temperature is not None:
            request["temperature"] = params.temperature
        if params.top_p is not None:
            request["top_p"] = params.top_p
        if params.tools:
            request["tools"] = self.convert_tools(params.tools)
        if params.thinking_budget and params.model.supports(ModelAbility.REASONING):
            request["thinking"] = {"type": "enabled", "budget_tokens": params.thinking_budget}

        if setting.prompt_caching:
            _apply_cache_control(request)

        logger.debug(
            f"Anthropic request: model={request['model']}, messages={len(wire_messages)}, "
            f"tools={len(request.get('tools', []))}, prompt_caching={setting.prompt_caching}"
        )
        return request

    build_request = build_message_request

    @retry(**default_retry_kwargs((
        anthropic.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
    )))
    async def _open_stream(self, client: anthropic.AsyncAnthropic, request: dict):
        return await client.messages.create(**request)

    async def stream_text(
        self,
        setting: AnthropicSetting,
        messages: list[Message],
        params: TextGenerationParams,
    ) -> AsyncIterator[MessageChunk]:
        request = self.build_message_request(setting, messages, params, stream=True)
        stream = await self._open_stream(self._client_for(setting), request)
        adapter = AnthropicStreamAdapter(params.model.model_id)
        async with stream:
            async for event in stream:
                chunk = adapter.feed(event)
                if chunk is not None:
                    yield chunk
