"""Write-only progress sink for human-readable build output.

The orchestrator never reads from a UI, so swapping implementations (or
using ``NullUi``) cannot change the outcome of a build.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .observability import get_logger


@runtime_checkable
class Ui(Protocol):
    """Progress and warning channel."""

    def say(self, message: str) -> None: ...
    def message(self, message: str) -> None: ...
    def error(self, message: str) -> None: ...


class LogUi:
    """Ui that forwards every line to structlog."""

    def __init__(self, name: str = 'image_builder.ui') -> None:
        self._logger = get_logger(name)

    def say(self, message: str) -> None:
        self._logger.info('ui_say', text=message)

    def message(self, message: str) -> None:
        self._logger.info('ui_message', text=message)

    def error(self, message: str) -> None:
        self._logger.warning('ui_error', text=message)


class NullUi:
    def say(self, message: str) -> None:
        pass

    def message(self, message: str) -> None:
        pass

    def error(self, message: str) -> None:
        pass


class RecordingUi:
    """Ui that keeps ``(level, text)`` lines in memory (testing)."""

    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []

    def say(self, message: str) -> None:
        self.lines.append(('say', message))

    def message(self, message: str) -> None:
        self.lines.append(('message', message))

    def error(self, message: str) -> None:
        self.lines.append(('error', message))

    @property
    def errors(self) -> list[str]:
        return [text for level, text in self.lines if level == 'error']

    def contains(self, fragment: str) -> bool:
        return any(fragment in text for _, text in self.lines)
