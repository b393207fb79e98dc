"""Dispatch channels and jobs produced by the escalation router."""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple

from .signals import SafetyEvent


class Channel(Enum):
    """Independent outbound paths a safety event can take."""
    EMAIL = "email"
    PUSH = "push"
    AUDIT_LOG = "audit_log"
    MODERATION_QUEUE = "moderation_queue"
    MANDATORY_REPORT = "mandatory_report"


# Channels that reach a person; only these decide whether the cooldown holds
HUMAN_CHANNELS = frozenset({Channel.EMAIL, Channel.PUSH})


@dataclass(frozen=True)
class DispatchJob:
    """One channel's share of the work for a routed event.
    
    `routed` lists every channel the router chose for the event, so the
    audit entry can show the full decision.
    """
    channel: Channel
    event: SafetyEvent
    alert_allowed: bool = True
    routed: Tuple[str, ...] = ()
    job_id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
