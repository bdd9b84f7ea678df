"""Diagnostic sinks the acquisition controller narrates to."""

from __future__ import annotations

import logging
from typing import Protocol


class DiagnosticSink(Protocol):
    def emit(self, message: str) -> None: ...


class LoggingSink:
    """Forward controller narration to a stdlib logger."""

    def __init__(self, logger: logging.Logger | None = None, level: int = logging.INFO):
        self.logger = logger or logging.getLogger("tmz_auth.harvest")
        self.level = level

    def emit(self, message: str) -> None:
        self.logger.log(self.level, message)


class NullSink:
    def emit(self, message: str) -> None:
        pass
