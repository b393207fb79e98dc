"""Tests for the dispatch executor."""
import threading
from unittest.mock import MagicMock

import pytest

from keepwatch.shared.models import CategorySet, Channel, DispatchJob, SafetyEvent, SubmissionSource
from keepwatch.services.notification_service import (
    ChannelUnavailable,
    DispatchExecutor,
    Dispatcher,
    MAX_ATTEMPTS,
)


class ScriptedDispatcher(Dispatcher):
    """Raises the queued outcomes in order, then succeeds."""
    
    def __init__(self, channel, outcomes=()):
        self.channel = channel
        self.outcomes = list(outcomes)
        self.calls = 0
        self._lock = threading.Lock()
    
    def _send(self, job):
        with self._lock:
            self.calls += 1
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return f"{self.channel.value}-ok"


EVENT = SafetyEvent(
    event_id="evt_1",
    subject_id="user-1",
    raw_text="text",
    categories=CategorySet(),
    source=SubmissionSource.PRAYER_REQUEST,
)


def jobs(*channels):
    return [DispatchJob(channel=c, event=EVENT) for c in channels]


@pytest.fixture
def executor_factory():
    created = []
    
    def build(dispatchers):
        executor = DispatchExecutor({d.channel: d for d in dispatchers}, max_workers=4)
        created.append(executor)
        return executor
    
    yield build
    for executor in created:
        executor.shutdown(wait=True)


class TestDispatchExecutor:
    
    def test_runs_every_job(self, executor_factory):
        email = ScriptedDispatcher(Channel.EMAIL)
        push = ScriptedDispatcher(Channel.PUSH)
        executor = executor_factory([email, push])
        
        batch = executor.submit("evt_1", jobs(Channel.EMAIL, Channel.PUSH))
        
        assert batch.wait(5)
        assert {r.channel for r in batch.results} == {Channel.EMAIL, Channel.PUSH}
        assert all(r.ok for r in batch.results)
    
    def test_failed_job_is_retried_once(self, executor_factory):
        email = ScriptedDispatcher(Channel.EMAIL, [RuntimeError("500")])
        executor = executor_factory([email])
        
        batch = executor.submit("evt_1", jobs(Channel.EMAIL))
        
        assert batch.wait(5)
        result = batch.result_for(Channel.EMAIL)
        assert result.ok is True
        assert result.attempts == 2
        assert email.calls == 2
    
    def test_gives_up_after_max_attempts(self, executor_factory):
        email = ScriptedDispatcher(Channel.EMAIL, [RuntimeError("500")] * 5)
        executor = executor_factory([email])
        
        batch = executor.submit("evt_1", jobs(Channel.EMAIL))
        
        assert batch.wait(5)
        assert batch.result_for(Channel.EMAIL).ok is False
        assert email.calls == MAX_ATTEMPTS
        assert executor.stats() == {"email": {"succeeded": 0, "failed": 1}}
    
    def test_unavailable_channel_is_not_retried(self, executor_factory):
        push = ScriptedDispatcher(Channel.PUSH, [ChannelUnavailable("no topic")])
        executor = executor_factory([push])
        
        batch = executor.submit("evt_1", jobs(Channel.PUSH))
        
        assert batch.wait(5)
        assert push.calls == 1
        assert batch.result_for(Channel.PUSH).retryable is False
    
    def test_one_failure_does_not_block_others(self, executor_factory):
        email = ScriptedDispatcher(Channel.EMAIL, [RuntimeError("500")] * 2)
        audit = ScriptedDispatcher(Channel.AUDIT_LOG)
        executor = executor_factory([email, audit])
        
        batch = executor.submit("evt_1", jobs(Channel.EMAIL, Channel.AUDIT_LOG))
        
        assert batch.wait(5)
        assert batch.result_for(Channel.EMAIL).ok is False
        assert batch.result_for(Channel.AUDIT_LOG).ok is True
    
    def test_missing_dispatcher(self, executor_factory):
        executor = executor_factory([])
        
        batch = executor.submit("evt_1", jobs(Channel.MANDATORY_REPORT))
        
        assert batch.wait(5)
        assert batch.result_for(Channel.MANDATORY_REPORT).ok is False
    
    def test_completion_callback_gets_all_results(self, executor_factory):
        email = ScriptedDispatcher(Channel.EMAIL)
        push = ScriptedDispatcher(Channel.PUSH, [RuntimeError("a"), RuntimeError("b")])
        executor = executor_factory([email, push])
        callback = MagicMock()
        
        batch = executor.submit("evt_1", jobs(Channel.EMAIL, Channel.PUSH), callback)
        
        assert batch.wait(5)
        callback.assert_called_once()
        results = callback.call_args[0][0]
        assert sorted(r.ok for r in results) == [False, True]
    
    def test_callback_error_is_contained(self, executor_factory):
        executor = executor_factory([ScriptedDispatcher(Channel.EMAIL)])
        
        batch = executor.submit("evt_1", jobs(Channel.EMAIL), MagicMock(side_effect=ValueError("x")))
        
        assert batch.wait(5)
        assert batch.done
    
    def test_empty_batch_completes_immediately(self, executor_factory):
        callback = MagicMock()
        
        batch = executor_factory([]).submit("evt_1", [], callback)
        
        assert batch.done
        callback.assert_called_once_with([])
    
    def test_submit_after_shutdown_fails_jobs(self, executor_factory):
        executor = executor_factory([ScriptedDispatcher(Channel.EMAIL)])
        executor.shutdown(wait=True)
        
        batch = executor.submit("evt_1", jobs(Channel.EMAIL))
        
        assert batch.done
        assert batch.result_for(Channel.EMAIL).ok is False
    
    def test_history(self, executor_factory):
        executor = executor_factory([ScriptedDispatcher(Channel.EMAIL)])
        
        executor.submit("evt_1", jobs(Channel.EMAIL)).wait(5)
        executor.submit("evt_2", jobs(Channel.EMAIL)).wait(5)
        
        assert len(executor.recent_results()) == 2
        assert executor.stats()["email"]["succeeded"] == 2
