from __future__ import annotations

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

from convo_engine.models import Audio, Document, Image, Part, Text, Tool, Video

_MAX_ATTEMPTS = 5


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/{_MAX_ATTEMPTS})...")


def default_retry_kwargs(exception_types: tuple[type[Exception], ...]) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=10, min=10, max=320),
        "stop": stop_after_attempt(_MAX_ATTEMPTS),
        "before_sleep": _on_retry,
        "reraise": True,
    }


def parse_data_uri(url: str) -> tuple[str, str] | None:
    """Split ``data:<mime>;base64,<data>`` into ``(mime, data)``."""
    if not url.startswith("data:") or ";base64," not in url:
        return None
    header, data = url[len("data:"):].split(";base64,", 1)
    return header or "application/octet-stream", data


def is_remote_url(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


def output_as_text(parts: tuple[Part, ...] | list[Part]) -> str:
    """Flatten tool output parts to text for vendors that only accept string results."""
    chunks: list[str] = []
    for part in parts:
        if isinstance(part, Text):
            chunks.append(part.text)
        elif isinstance(part, (Image, Video, Audio)):
            chunks.append(f"[{type(part).__name__.lower()}: {part.url[:64]}]")
        elif isinstance(part, Document):
            chunks.append(f"[document: {part.file_name}]")
    return "\n".join(chunks)


def split_tool_rounds(parts: tuple[Part, ...]) -> list[tuple[Part, ...]]:
    """Split assistant parts at tool boundaries.

    One assistant message can hold several request/response rounds: text,
    then tool calls, then more text once the results came back. Vendors expect
    each round as its own assistant turn followed by the tool results, so a
    new round starts whenever a non-tool part follows a tool part.
    """
    rounds: list[tuple[Part, ...]] = []
    current: list[Part] = []
    seen_tool = False
    for part in parts:
        is_tool = isinstance(part, Tool)
        if seen_tool and not is_tool:
            rounds.append(tuple(current))
            current = []
            seen_tool = False
        current.append(part)
        seen_tool = seen_tool or is_tool
    if current:
        rounds.append(tuple(current))
    return rounds
