"""Escalation Router - decides which channels a classified event fires.

Routing is computed once, up front, from the event and the dedup
decision. No channel depends on another channel's outcome.

| condition                                      | channels            |
|------------------------------------------------|---------------------|
| any category matched and alert allowed         | EMAIL, PUSH         |
| any category matched                           | AUDIT_LOG           |
| abuse and subject is a minor                   | MANDATORY_REPORT    |
| flag_count >= threshold or spam detected       | MODERATION_QUEUE    |
"""
import logging
from typing import List

from keepwatch.shared.models import Channel, DispatchJob, SafetyEvent, SignalCategory

logger = logging.getLogger(__name__)

DEFAULT_FLAG_THRESHOLD = 3


class EscalationRouter:
    """Maps a SafetyEvent to dispatch jobs."""
    
    def __init__(self, flag_threshold: int = DEFAULT_FLAG_THRESHOLD):
        self.flag_threshold = flag_threshold
    
    def channels_for(self, event: SafetyEvent, alert_allowed: bool) -> List[Channel]:
        channels: List[Channel] = []
        
        if event.has_signal:
            if alert_allowed:
                channels += [Channel.EMAIL, Channel.PUSH]
            channels.append(Channel.AUDIT_LOG)
        
        # Bypasses dedup: every disclosure is recorded
        if SignalCategory.ABUSE in event.categories and event.subject_is_minor:
            channels.append(Channel.MANDATORY_REPORT)
        
        if event.flag_count >= self.flag_threshold or event.spam_detected:
            channels.append(Channel.MODERATION_QUEUE)
        
        return channels
    
    def route(self, event: SafetyEvent, alert_allowed: bool) -> List[DispatchJob]:
        """Build one job per channel the event should fire.
        
        Args:
            event: Classified event
            alert_allowed: Dedup decision for the pastor alert channels
            
        Returns:
            Jobs in decision-table order; empty if nothing fires
        """
        channels = self.channels_for(event, alert_allowed)
        routed = tuple(c.value for c in channels)
        jobs = [
            DispatchJob(channel=c, event=event, alert_allowed=alert_allowed, routed=routed)
            for c in channels
        ]
        
        if jobs:
            logger.info(
                "EVENT_ROUTED",
                extra={
                    "event_id": event.event_id,
                    "categories": sorted(c.value for c in event.categories),
                    "alert_allowed": alert_allowed,
                    "channels": list(routed),
                }
            )
        return jobs


def route(event: SafetyEvent, alert_allowed: bool) -> List[DispatchJob]:
    """Route with the default flag threshold."""
    return EscalationRouter().route(event, alert_allowed)
