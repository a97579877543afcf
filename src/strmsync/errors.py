"""Exception types raised by the generation engine and scheduler."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from strmsync.models import RunResult


class GenerationError(Exception):
    """A run aborted before producing a representative result.

    ``phase`` names the step that failed: "prepare", "clean" or "list".
    The underlying exception is kept as ``__cause__``.
    """

    def __init__(self, mapping: str, phase: str, message: str) -> None:
        super().__init__(f"[{mapping}] {phase} failed: {message}")
        self.mapping = mapping
        self.phase = phase


class RunCancelled(Exception):
    """The cancellation token fired before every item was admitted."""

    def __init__(self, partial: RunResult | None = None) -> None:
        super().__init__("run cancelled")
        self.partial = partial


class MappingNotFoundError(LookupError):
    """No mapping exists with the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"mapping not found: {name}")
        self.name = name


class InvalidScheduleError(ValueError):
    """A schedule expression could not be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"invalid schedule {expression!r}: {reason}")
        self.expression = expression


class AlistError(RuntimeError):
    """The AList server rejected a request or could not be reached."""
