from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import replace

from loguru import logger

from convo_engine.app_config import AppConfig, RuntimeEnv
from convo_engine.context_window import select
from convo_engine.logging_config import setup_logging
from convo_engine.merge import Clock, finish_message, finish_reasoning, merge
from convo_engine.models import Auto, Denied, Message, MessageRole, Part, Text, Tool, utc_now
from convo_engine.provider import (
    LLMProvider,
    Model,
    ModelAbility,
    ProviderSetting,
    TextGenerationParams,
    create_provider,
    create_setting,
)
from convo_engine.tool import Tool as ToolSpec
from convo_engine.tool_state import attach_output, can_execute, request_approval
from convo_engine.transformers import (
    InputTransformer,
    OutputTransformer,
    ThinkTagTransformer,
    TimeReminderTransformer,
    TransformerContext,
)


def _denied_output(state: Denied) -> list[Part]:
    reason = state.reason.strip()
    text = f"Tool call denied by user: {reason}" if reason else "Tool call denied by user"
    return [Text(text)]


class GenerationHandler:
    """Runs one assistant turn: stream, merge, then execute tools until the model stops.

    Each step selects the context window, applies the input transformers and
    streams the provider response into the history. Tool parts whose tool needs
    approval are moved to Pending and stop the loop; calling :meth:`run` again
    with the approved (or denied) history resumes where it left off.
    """

    def __init__(
        self,
        *,
        provider: LLMProvider,
        setting: ProviderSetting,
        params: TextGenerationParams,
        system_prompt: str = "",
        context_message_size: int = 64,
        max_tool_steps: int = 16,
        enable_time_reminder: bool = True,
        input_transformers: Sequence[InputTransformer] = (),
        output_transformers: Sequence[OutputTransformer] = (),
        clock: Clock = utc_now,
    ) -> None:
        self._provider = provider
        self._setting = setting
        self._params = params
        self._system_prompt = system_prompt
        self._context_message_size = context_message_size
        self._max_tool_steps = max_tool_steps
        self._input_transformers = list(input_transformers)
        self._output_transformers = list(output_transformers)
        self._clock = clock
        self._tool_map: dict[str, ToolSpec] = {t.name: t for t in params.tools}
        self._ctx = TransformerContext(model=params.model, enable_time_reminder=enable_time_reminder)

    async def run(self, messages: list[Message]) -> AsyncIterator[list[Message]]:
        """Yield display snapshots of the conversation; the last one is the final history."""
        history = list(messages)
        if not history:
            raise ValueError("messages must not be empty")

        for step in range(self._max_tool_steps):
            if history[-1].role == MessageRole.ASSISTANT:
                last = history[-1]
                pending = sum(1 for t in last.tools() if t.is_pending)
                if pending:
                    logger.info(f"Waiting for approval of {pending} tool call(s)")
                    break
                if not any(self._is_runnable(t) for t in last.tools()):
                    break
                history[-1] = replace(await self.execute_tools(last), finished_at=None)
                yield self._visual(history)

            logger.debug(f"Generation step {step + 1}/{self._max_tool_steps}")
            async for chunk in self._provider.stream_text(self._setting, self.build_context(history), self._params):
                history = merge(history, chunk, self._params.model.id, clock=self._clock)
                yield self._visual(history)

            if history[-1].role != MessageRole.ASSISTANT:
                logger.warning("Provider stream ended without an assistant message")
                break
            history[-1] = self._gate_approvals(finish_reasoning(history[-1], clock=self._clock))
        else:
            if any(self._is_runnable(t) for t in history[-1].tools()):
                logger.warning(f"Stopped after {self._max_tool_steps} generation steps with tool calls left unrun")

        if history[-1].role == MessageRole.ASSISTANT:
            history[-1] = finish_message(history[-1], clock=self._clock)
        for transformer in self._output_transformers:
            history = transformer.on_generation_finish(self._ctx, history)
        yield history

    def build_context(self, history: list[Message]) -> list[Message]:
        """Messages sent to the provider for the next step."""
        window = select(history, self._context_message_size)
        for transformer in self._input_transformers:
            window = transformer.transform(self._ctx, window)
        if self._system_prompt:
            window = [Message.system(self._system_prompt), *window]
        return window

    def _visual(self, history: list[Message]) -> list[Message]:
        view = history
        for transformer in self._output_transformers:
            view = transformer.visual_transform(self._ctx, view)
        return view

    def _is_runnable(self, tool: Tool) -> bool:
        return can_execute(tool) or (isinstance(tool.approval_state, Denied) and not tool.is_executed)

    def _gate_approvals(self, message: Message) -> Message:
        parts: list[Part] = []
        for part in message.parts:
            if isinstance(part, Tool) and not part.is_executed and isinstance(part.approval_state, Auto):
                spec = self._tool_map.get(part.tool_name)
                if spec is not None and spec.needs_approval:
                    part = request_approval(part)
            parts.append(part)
        return replace(message, parts=tuple(parts))

    async def execute_tools(self, message: Message) -> Message:
        """Run every runnable tool part of ``message`` concurrently and attach the outputs."""

        async def run_one(part: Tool) -> Tool:
            if isinstance(part.approval_state, Denied):
                logger.info(f"Tool {part.tool_name} ({part.tool_call_id}) denied")
                return attach_output(part, _denied_output(part.approval_state))

            tool = self._tool_map.get(part.tool_name)
            if tool is None:
                logger.warning(f"Model called unknown tool {part.tool_name!r}")
                return attach_output(part, [Text(f'Error: unknown tool "{part.tool_name}"')])

            try:
                result = await tool.execute(part.input_as_json())
            except Exception as ex:
                logger.warning(f"Tool {part.tool_name} failed: {ex}")
                result = f'Error executing tool "{part.tool_name}": {ex}'
            return attach_output(part, [Text(result)])

        runnable = [p for p in message.parts if isinstance(p, Tool) and self._is_runnable(p)]
        logger.info(f"Running {', '.join(p.tool_name for p in runnable)}")
        finished = await asyncio.gather(*(run_one(p) for p in runnable))
        by_id = {id(p): f for p, f in zip(runnable, finished)}
        return replace(message, parts=tuple(by_id.get(id(p), p) for p in message.parts))


def create_generation_handler(
    config: AppConfig,
    env: RuntimeEnv,
    *,
    tools: Sequence[ToolSpec] = (),
    system_prompt: str = "",
    provider: LLMProvider | None = None,
) -> GenerationHandler:
    """Wire a handler from ``config.json`` settings and the provider credentials.

    Also replaces the loguru sinks with the configured log consumers.
    """
    for description in setup_logging(config.log_level, config.log_consumers):
        logger.info(f"Logging to {description}")

    model = Model(model_id=config.model, abilities=frozenset({ModelAbility.TOOL}))
    params = TextGenerationParams(
        model=model,
        temperature=config.temperature,
        top_p=config.top_p,
        max_tokens=config.max_tokens,
        tools=tuple(tools),
    )
    setting = create_setting(
        config.provider_name,
        env.provider_api_key,
        env.provider_base_url,
        prompt_caching=config.prompt_caching,
    )
    logger.info(
        f"Generation handler: provider={config.provider_name}, model={config.model}, "
        f"context={config.context_message_size}, tools={len(params.tools)}"
    )
    return GenerationHandler(
        provider=provider or create_provider(config.provider_name),
        setting=setting,
        params=params,
        system_prompt=system_prompt,
        context_message_size=config.context_message_size,
        max_tool_steps=config.max_tool_steps,
        enable_time_reminder=config.enable_time_reminder,
        input_transformers=[TimeReminderTransformer()],
        output_transformers=[ThinkTagTransformer()],
    )
