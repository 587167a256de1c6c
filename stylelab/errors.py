"""
Error taxonomy for the optimization engine.

ValidationError  - bad input, rejected before any state is persisted
NotFoundError    - missing process/round/segment, surfaced to caller
ProviderError    - message generation or email send failed on every provider
SchedulingError  - a round could not be advanced; the round is marked failed
"""


class StyleLabError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(StyleLabError):
    pass


class NotFoundError(StyleLabError):
    pass


class ProviderError(StyleLabError):
    def __init__(self, message: str, provider: str = "none"):
        super().__init__(message)
        self.provider = provider


class SchedulingError(StyleLabError):
    pass


class InvalidTransitionError(SchedulingError):
    """Raised when a round is asked to move to a state its current state does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid round transition: {current} -> {target}")
        self.current = current
        self.target = target
