"""Tests for the dispatch job state machine."""
import pytest

from dispatch.errors import InvalidTransition
from dispatch.state_machine import (
    TRANSITIONS, can_transition, command_sources, command_target, is_terminal,
)
from models.schemas import JobCommand, JobStatus


class TestTransitions:
    @pytest.mark.parametrize("current,target", [
        (JobStatus.PENDING, JobStatus.RUNNING),
        (JobStatus.PENDING, JobStatus.PAUSED),
        (JobStatus.PENDING, JobStatus.CANCELLED),
        (JobStatus.RUNNING, JobStatus.PAUSED),
        (JobStatus.RUNNING, JobStatus.CANCELLED),
        (JobStatus.RUNNING, JobStatus.COMPLETED),
        (JobStatus.PAUSED, JobStatus.RUNNING),
        (JobStatus.PAUSED, JobStatus.CANCELLED),
    ])
    def test_legal(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.PAUSED, JobStatus.COMPLETED),
        (JobStatus.RUNNING, JobStatus.PENDING),
        (JobStatus.PAUSED, JobStatus.PENDING),
    ])
    def test_illegal(self, current, target):
        assert not can_transition(current, target)

    @pytest.mark.parametrize("terminal", [JobStatus.CANCELLED, JobStatus.COMPLETED])
    def test_nothing_leaves_terminal(self, terminal):
        assert is_terminal(terminal)
        assert terminal.is_terminal
        assert TRANSITIONS[terminal] == frozenset()
        for target in JobStatus:
            assert not can_transition(terminal, target)

    def test_non_terminal(self):
        for status in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED):
            assert not is_terminal(status)


class TestCommands:
    def test_pause_from_running(self):
        assert command_target(JobCommand.PAUSE, JobStatus.RUNNING) == JobStatus.PAUSED

    def test_pause_from_pending(self):
        assert command_target(JobCommand.PAUSE, JobStatus.PENDING) == JobStatus.PAUSED

    def test_resume_from_paused(self):
        assert command_target(JobCommand.RESUME, JobStatus.PAUSED) == JobStatus.RUNNING

    def test_start_only_from_pending(self):
        assert command_sources(JobCommand.START) == frozenset({JobStatus.PENDING})
        with pytest.raises(InvalidTransition):
            command_target(JobCommand.START, JobStatus.PAUSED, "j1")

    def test_cancel_from_any_live_state(self):
        for status in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED):
            assert command_target(JobCommand.CANCEL, status) == JobStatus.CANCELLED

    def test_resume_cancelled_rejected(self):
        with pytest.raises(InvalidTransition) as exc:
            command_target(JobCommand.RESUME, JobStatus.CANCELLED, "job-9")
        assert exc.value.code == "invalid_transition"
        assert exc.value.job_id == "job-9"
        assert exc.value.current == "cancelled"

    def test_no_command_reaches_completed(self):
        for command in JobCommand:
            for status in JobStatus:
                try:
                    target = command_target(command, status)
                except InvalidTransition:
                    continue
                assert target != JobStatus.COMPLETED
                assert can_transition(status, target)
