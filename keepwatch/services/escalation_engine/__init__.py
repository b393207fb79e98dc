"""Escalation Engine: routes classified submissions to their channels.

Flow per submission:
1. Keyword Classifier tags the text
2. Alert Deduplicator claims the subject's 24h cooldown
3. Escalation Router picks channels from the decision table
4. DispatchExecutor runs the jobs off the request path

Endpoints:
- POST /submissions - Store a prayer request or journal entry
- GET /submissions - Public prayer wall
- POST /submissions/<id>/flag - Report a prayer request
- POST /submissions/<id>/heart - Heart a prayer request
- POST /guidance/messages - Screen a pastoral-guidance message
"""

from .config import PipelineSettings
from .pipeline import PipelineOutcome, SafetyPipeline, SubmissionReceipt
from .router import EscalationRouter, route

__all__ = [
    "PipelineSettings",
    "PipelineOutcome",
    "SafetyPipeline",
    "SubmissionReceipt",
    "EscalationRouter",
    "route",
]
