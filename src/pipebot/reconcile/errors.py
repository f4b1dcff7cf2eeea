from __future__ import annotations

from typing import List, Sequence


class PipebotError(Exception):
    pass


class ConfigurationError(PipebotError):
    """Raised for malformed input that makes a single event unprocessable."""


class NotFoundError(PipebotError):
    pass


class ProviderError(PipebotError):
    provider: str
    activity: str

    def __init__(self, message: str, *, provider: str, activity: str):
        self.provider = provider
        self.activity = activity
        super().__init__(f"{provider} failed for {activity}: {message}")


class SinkError(PipebotError):
    destination: str

    def __init__(self, message: str, *, destination: str):
        self.destination = destination
        super().__init__(f"sending to {destination} failed: {message}")


class RenderError(PipebotError):
    pass


class NotificationFailed(PipebotError):
    """One or more rules failed while handling a single activity.

    Rules are evaluated independently, so this is raised only after every rule
    had its chance to run. ``errors`` holds the per-rule failures in rule order.
    """

    errors: List[PipebotError]

    def __init__(self, errors: Sequence[PipebotError]):
        self.errors = list(errors)
        super().__init__(
            f"{len(self.errors)} rule(s) failed: "
            + "; ".join(str(e) for e in self.errors)
        )
