"""
Dispatch layer — job state machine, processor, sweeper, commands, service.

Import the concrete pieces from their modules (dispatch.service,
dispatch.processor, ...). Only the error taxonomy is re-exported here,
because audience.resolver depends on it and the service depends on
audience.resolver.
"""
from dispatch.errors import (
    DispatchError,
    InvalidSelector,
    EmptyAudience,
    JobNotFound,
    InvalidTransition,
    ChannelNotConfigured,
)

__all__ = [
    "DispatchError", "InvalidSelector", "EmptyAudience",
    "JobNotFound", "InvalidTransition", "ChannelNotConfigured",
]
