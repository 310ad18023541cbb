"""Logging levels and simple logging functions."""

from __future__ import annotations

from enum import IntEnum
from typing import Callable, List, Tuple


class Level(IntEnum):
    """Severity of a log message."""

    NONE = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4

    def __str__(self) -> str:
        return _LEVEL_NAMES.get(self, "UNKNOWN")

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


_LEVEL_NAMES = {
    Level.DEBUG: "DEBUG",
    Level.INFO: "INFO",
    Level.WARN: "WARN",
    Level.ERROR: "ERROR",
}

LogFunc = Callable[..., None]
"""A logging function: ``log(level, format, *args)``."""


def _render(fmt: str, args: tuple) -> str:
    return fmt % args if args else fmt


def stdout() -> LogFunc:
    """Return a logging function that prints messages on standard output."""

    def log(level: Level, fmt: str, *args) -> None:
        print(f"{level}: {_render(fmt, args)}")

    return log


def collector() -> Tuple[LogFunc, List[str]]:
    """Return a logging function and the list it appends rendered messages to."""
    messages: List[str] = []

    def log(level: Level, fmt: str, *args) -> None:
        messages.append(f"{level}: {_render(fmt, args)}")

    return log, messages