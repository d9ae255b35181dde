from __future__ import annotations

from typing import Optional


class StoryboardError(Exception):
    pass


class InputValidationError(StoryboardError):
    pass


class InvalidTransitionError(StoryboardError):
    pass


class JobNotFoundError(StoryboardError):
    pass


class CapabilityError(StoryboardError):
    """Failure reported by (or about) an external text or image capability."""

    def __init__(self, message: str, capability: Optional[str] = None) -> None:
        super().__init__(message)
        self.capability = capability


class MalformedResponseError(CapabilityError):
    pass


class SafetyRejectionError(CapabilityError):
    pass


class GenerationTimeoutError(StoryboardError):
    """An asynchronous generation did not finish inside its polling window."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts
