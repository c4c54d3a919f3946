from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import openai
from loguru import logger
from tenacity import retry

from convo_engine.models import (
    Audio,
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
)
from convo_engine.provider import OpenAISetting, TextGenerationParams
from convo_engine.providers.common import (
    default_retry_kwargs,
    output_as_text,
    parse_data_uri,
    split_tool_rounds,
)
from convo_engine.tool import Tool as ToolSpec

# Chat Completions input_audio only accepts these two formats.
_AUDIO_FORMATS = {
    "wav": "wav",
    "wave": "wav",
    "x-wav": "wav",
    "vnd.wave": "wav",
    "mpeg": "mp3",
    "mp3": "mp3",
    "mpeg3": "mp3",
    "x-mpeg-3": "mp3",
}


def _user_content(parts: tuple[Part, ...]) -> list[dict]:
    content: list[dict] = []
    for part in parts:
        if isinstance(part, Text):
            if part.text.strip():
                content.append({"type": "text", "text": part.text})
        elif isinstance(part, Image):
            if part.url.strip():
                content.append({"type": "image_url", "image_url": {"url": part.url}})
        elif isinstance(part, Audio):
            data_uri = parse_data_uri(part.url)
            if data_uri is None:
                continue
            mime, data = data_uri
            audio_format = _AUDIO_FORMATS.get(mime.rsplit("/", 1)[-1].lower())
            if audio_format is None:
                logger.debug(f"OpenAI chat input does not take {mime} audio, skipping")
                continue
            content.append({
                "type": "input_audio",
                "input_audio": {"data": data, "format": audio_format},
            })
        else:
            logger.debug(f"OpenAI chat input does not take {type(part).__name__} parts, skipping")
    return content


def _assistant_round(parts: tuple[Part, ...]) -> list[dict]:
    text_parts: list[str] = []
    tool_calls: list[dict] = []
    tool_results: list[dict] = []
    for part in parts:
        if isinstance(part, Text):
            if part.text:
                text_parts.append(part.text)
        elif isinstance(part, Tool) and part.is_executed:
            tool_calls.append({
                "id": part.tool_call_id,
                "type": "function",
                "function": {
                    "name": part.tool_name,
                    "arguments": json.dumps(part.input_as_json()),
                },
            })
            tool_results.append({
                "role": "tool",
                "tool_call_id": part.tool_call_id,
                "content": output_as_text(part.output),
            })

    if not text_parts and not tool_calls:
        return []
    oai_msg: dict = {"role": "assistant", "content": "".join(text_parts) if text_parts else None}
    if tool_calls:
        oai_msg["tool_calls"] = tool_calls
    return [oai_msg, *tool_results]


def _to_openai_messages(messages: list[Message]) -> list[dict]:
    """Convert the conversation to OpenAI chat format."""
    out: list[dict] = []

    for message in messages:
        if message.role == MessageRole.SYSTEM:
            text = message.text().strip()
            if text:
                out.append({"role": "system", "content": text})

        elif message.role == MessageRole.USER:
            content = _user_content(message.parts)
            if content:
                out.append({"role": "user", "content": content})

        elif message.role == MessageRole.ASSISTANT:
            for round_parts in split_tool_rounds(message.parts):
                out.extend(_assistant_round(round_parts))

        else:
            logger.debug(f"Skipping legacy {message.role.value} message {message.id}")

    return out


class OpenAIStreamAdapter:
    """Translates chat completion stream chunks into ``MessageChunk`` values."""

    def __init__(self, model: str):
        self._model = model
        # index -> id; only the first fragment of a call carries its id.
        self._tool_ids: dict[int, str] = {}

    def feed(self, chunk: Any) -> MessageChunk | None:
        usage = None
        if getattr(chunk, "usage", None) is not None:
            usage = TokenUsage(
                prompt_tokens=chunk.usage.prompt_tokens or 0,
                completion_tokens=chunk.usage.completion_tokens or 0,
                cached_tokens=getattr(getattr(chunk.usage, "prompt_tokens_details", None), "cached_tokens", 0) or 0,
                total_tokens=chunk.usage.total_tokens or 0,
            )

        choice = chunk.choices[0] if chunk.choices else None
        if choice is None and usage is None:
            return None

        parts: list[Part] = []
        finish_reason = None
        if choice is not None:
            finish_reason = choice.finish_reason
            delta = choice.delta
            if delta is not None:
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    parts.append(Reasoning(reasoning))
                if delta.content:
                    parts.append(Text(delta.content))
                for tc_delta in delta.tool_calls or []:
                    if tc_delta.id:
                        self._tool_ids[tc_delta.index] = tc_delta.id
                    function = tc_delta.function
                    parts.append(Tool(
                        tool_call_id=self._tool_ids.get(tc_delta.index, ""),
                        tool_name=(function.name if function and function.name else ""),
                        input=(function.arguments if function and function.arguments else ""),
                    ))

        return MessageChunk(
            id=chunk.id,
            model=getattr(chunk, "model", None) or self._model,
            choices=(
                MessageChoice(
                    index=0,
                    delta=Message(role=MessageRole.ASSISTANT, parts=tuple(parts)),
                    finish_reason=finish_reason,
                ),
            ),
            usage=usage,
        )


class OpenAIProvider:
    def __init__(self, client: openai.AsyncOpenAI | None = None):
        self._client = client
        self._clients: dict[tuple[str, str | None], openai.AsyncOpenAI] = {}

    def _client_for(self, setting: OpenAISetting) -> openai.AsyncOpenAI:
        if self._client is not None:
            return self._client
        key = (setting.api_key, setting.base_url)
        if key not in self._clients:
            self._clients[key] = openai.AsyncOpenAI(api_key=setting.api_key, base_url=setting.base_url)
        return self._clients[key]

    def convert_tools(self, tools: tuple[ToolSpec, ...] | list[ToolSpec]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.input_schema,
                },
            }
            for t in tools
        ]

    def build_chat_request(
        self,
        setting: OpenAISetting,
        messages: list[Message],
        params: TextGenerationParams,
        stream: bool = False,
    ) -> dict:
        oai_messages = _to_openai_messages(messages)
        request: dict[str, Any] = {
            "model": params.model.model_id,
            "messages": oai_messages,
            "stream": stream,
        }
        if stream:
            request["stream_options"] = {"include_usage": True}
        if params.max_tokens is not None:
            request["max_tokens"] = params.max_tokens
        if params.temperature is not None:
            request["temperature"] = params.temperature
        if params.top_p is not None:
            request["top_p"] = params.top_p
        if params.tools:
            request["tools"] = self.convert_tools(params.tools)

        logger.debug(
            f"OpenAI request: model={request['model']}, messages={len(oai_messages)}, "
            f"tools={len(request.get('tools', []))}"
        )
        return request

    build_request = build_chat_request

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
    )))
    async def _open_stream(self, client: openai.AsyncOpenAI, request: dict):
        return await client.chat.completions.create(**request)

    async def stream_text(
        self,
        setting: OpenAISetting,
        messages: list[Message],
        params: TextGenerationParams,
    ) -> AsyncIterator[MessageChunk]:
        request = self.build_chat_request(setting, messages, params, stream=True)
        stream = await self._open_stream(self._client_for(setting), request)
        adapter = OpenAIStreamAdapter(params.model.model_id)
        async with stream:
            async for raw in stream:
                chunk = adapter.feed(raw)
                if chunk is not None:
                    yield chunk
