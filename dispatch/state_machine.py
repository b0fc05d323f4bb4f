"""
Dispatch Job State Machine — the legal status transitions of a job.

    pending ──start/tick──▶ running ──(sent+failed >= valid)──▶ completed
       │                    │   ▲
       │ pause        pause │   │ resume
       │                    ▼   │
       └──────────────────▶ paused

    pending | running | paused ──cancel──▶ cancelled

`cancelled` and `completed` are terminal: nothing leaves them.

Commands (pause / resume / cancel / start) come from the Command Interface.
`running → completed` is reserved for the Processor and the Sweeper and is
never reachable through a command.
"""
from __future__ import annotations

from models.schemas import JobCommand, JobStatus, TERMINAL_STATUSES
from dispatch.errors import InvalidTransition


TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.PAUSED, JobStatus.CANCELLED, JobStatus.COMPLETED}),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.CANCELLED: frozenset(),
    JobStatus.COMPLETED: frozenset(),
}

# command → (states it may be issued from, resulting state)
COMMANDS: dict[JobCommand, tuple[frozenset[JobStatus], JobStatus]] = {
    JobCommand.START: (frozenset({JobStatus.PENDING}), JobStatus.RUNNING),
    JobCommand.PAUSE: (frozenset({JobStatus.PENDING, JobStatus.RUNNING}), JobStatus.PAUSED),
    JobCommand.RESUME: (frozenset({JobStatus.PAUSED}), JobStatus.RUNNING),
    JobCommand.CANCEL: (
        frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED}),
        JobStatus.CANCELLED,
    ),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def command_sources(command: JobCommand) -> frozenset[JobStatus]:
    return COMMANDS[command][0]


def command_target(command: JobCommand, current: JobStatus, job_id: str = "") -> JobStatus:
    """Resulting status of `command` applied to a job in `current`, or raise."""
    sources, target = COMMANDS[command]
    if current not in sources:
        raise InvalidTransition(job_id, current.value, target.value)
    return target
