"""Keepwatch services.

Service layout:
- safety_service: Deterministic keyword classifier
- alert_service: Per-subject alert cooldown
- escalation_engine: Router, pipeline and inbound endpoints
- notification_service: Channel dispatchers and the dispatch executor
- moderation_service: Prayer request review queue
- mandatory_report: Capture flow for minors disclosing abuse
- audit_service: Hash-chained audit trail
"""
