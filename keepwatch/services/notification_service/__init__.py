"""Notification Service: per-channel dispatch of routed safety events.

Components:
- dispatchers.py: SES email, SNS push, audit log, moderation queue and
  mandatory-report dispatchers returning Ack / DispatchError
- executor.py: thread-pool executor with a single retry per job
- templates.py: pastor alert, push and mandatory-report message bodies
"""

from .dispatchers import (
    Ack,
    AuditLogDispatcher,
    ChannelUnavailable,
    DispatchError,
    DispatchResult,
    Dispatcher,
    EmailDispatcher,
    MandatoryReportDispatcher,
    ModerationQueueDispatcher,
    PushDispatcher,
)
from .executor import DispatchBatch, DispatchExecutor, MAX_ATTEMPTS

__all__ = [
    "Ack",
    "AuditLogDispatcher",
    "ChannelUnavailable",
    "DispatchError",
    "DispatchResult",
    "Dispatcher",
    "EmailDispatcher",
    "MandatoryReportDispatcher",
    "ModerationQueueDispatcher",
    "PushDispatcher",
    "DispatchBatch",
    "DispatchExecutor",
    "MAX_ATTEMPTS",
]
