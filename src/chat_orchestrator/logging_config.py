import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from chat_orchestrator.errors import ConfigurationError


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


@dataclass
class ConsoleLogConsumer:
    """stderr sink, so replies streamed to stdout stay readable."""

    colorize: bool | None = None

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            colorize=self.colorize,
            format="<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


@dataclass
class FileLogConsumer:
    path: str = "chat_orchestrator.log"
    rotation: str = "10 MB"
    retention: int = 3
    serialize: bool = False

    def register(self, level: str) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self.path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self.rotation,
            retention=self.retention,
            serialize=self.serialize,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        kind = "json" if self.serialize else "text"
        return f"file ({self.path}, {level}, {kind}, rotation {self.rotation})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file"},
]


def _normalize_level(level: object) -> str:
    name = str(level).strip().upper()
    try:
        logger.level(name)
    except ValueError as ex:
        raise ConfigurationError(f"Unknown log level: {level!r}") from ex
    return name


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's sinks with the configured consumers.

    Each entry is ``{"type": "console" | "file", "level": ...}`` plus keyword
    arguments for that consumer (``path``, ``rotation``, ``retention``,
    ``serialize`` for files). Unknown types are skipped with a warning; an
    unknown level is a ConfigurationError. Returns one description per sink.
    """
    default_level = _normalize_level(level)
    logger.remove()

    descriptions: list[str] = []
    for entry in _DEFAULT_CONSUMERS if consumers is None else consumers:
        sink_type = str(entry.get("type", "")).strip().lower()
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = _normalize_level(entry["level"]) if "level" in entry else default_level
        options = {k: v for k, v in entry.items() if k not in ("type", "level")}
        try:
            consumer = cls(**options)
        except TypeError as ex:
            raise ConfigurationError(f"Invalid options for {sink_type} log consumer: {ex}") from ex

        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
