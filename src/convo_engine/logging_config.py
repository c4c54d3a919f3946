import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


def _module_filter(prefixes: list[str] | None):
    """Keep only records emitted under one of ``prefixes`` (e.g. ``convo_engine.migration``)."""
    if not prefixes:
        return None
    allowed = tuple(prefixes)

    def accept(record: dict) -> bool:
        return (record["name"] or "").startswith(allowed)

    return accept


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, modules: list[str] | None = None):
        self._modules = modules

    def register(self, level: str) -> int:
        return logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, filter=_module_filter(self._modules))

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    """Rotating plain-text log file. ``serialize`` writes one JSON record per line instead."""

    def __init__(
        self,
        path: str = "convo_engine.log",
        rotation: str = "10 MB",
        retention: int = 3,
        serialize: bool = False,
        modules: list[str] | None = None,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize
        self._modules = modules

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            filter=_module_filter(self._modules),
        )

    def describe(self, level: str) -> str:
        kind = "jsonl" if self._serialize else "file"
        return f"{kind} ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

# Console only: the engine is embedded in other processes, which choose where files go.
_DEFAULT_CONSUMERS: list[dict[str, Any]] = [{"type": "console"}]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers.

    Each consumer dict has a ``type`` (``console`` or ``file``), an optional
    ``level`` overriding the global one, and constructor keyword arguments.
    Returns a description of each registered consumer.
    """
    logger.remove()

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = config.get("level", level)
        consumer = cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
