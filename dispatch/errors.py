"""Domain errors raised by the dispatch layer."""
from __future__ import annotations


class DispatchError(Exception):
    """Base exception for all dispatch operations."""

    code = "dispatch_error"

    def __init__(self, message: str, job_id: str = ""):
        self.job_id = job_id
        super().__init__(message)


class InvalidSelector(DispatchError):
    code = "invalid_selector"

    def __init__(self, selector: str, reason: str = ""):
        self.selector = selector
        detail = f": {reason}" if reason else ""
        super().__init__(f"Audience selector '{selector}' cannot be resolved{detail}")


class EmptyAudience(DispatchError):
    code = "empty_audience"

    def __init__(self, selector: str, channel: str = ""):
        self.selector = selector
        super().__init__(f"Audience '{selector}' has no valid {channel} recipients".replace("  ", " "))


class JobNotFound(DispatchError):
    code = "not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Dispatch job {job_id} not found", job_id)


class InvalidTransition(DispatchError):
    code = "invalid_transition"

    def __init__(self, job_id: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move job {job_id} from '{current}' to '{target}'", job_id,
        )


class ChannelNotConfigured(DispatchError):
    code = "channel_not_configured"

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"No adapter registered for channel '{channel}'")
