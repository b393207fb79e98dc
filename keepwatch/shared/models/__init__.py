"""Shared domain models for the KeepWatch safety pipeline."""
from .signals import (
    SignalCategory,
    CategorySet,
    SafetyEvent,
    SubjectContact,
    SubmissionSource,
)
from .dispatch import Channel, DispatchJob, HUMAN_CHANNELS

__all__ = [
    "SignalCategory",
    "CategorySet",
    "SafetyEvent",
    "SubjectContact",
    "SubmissionSource",
    "Channel",
    "DispatchJob",
    "HUMAN_CHANNELS",
]
