"""Wires the pipeline's components for the configured storage backend.

Each Flask service builds its own Runtime. They only see one another's
writes through shared storage, so serving them needs the postgres backend;
the memory backend is for tests.
"""
import hmac
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from keepwatch.shared.database import ConnectionManager, get_connection_manager
from keepwatch.shared.models import Channel
from keepwatch.shared.utils import configure_pii_salt
from keepwatch.services.alert_service import (
    AlertDeduplicator,
    CooldownStore,
    InMemoryCooldownStore,
    PostgresCooldownStore,
)
from keepwatch.services.audit_service import AuditLogger, AuditRepository
from keepwatch.services.mandatory_report.capture import MandatoryReportFlow
from keepwatch.services.mandatory_report.report_repository import (
    InMemoryReportRepository,
    PostgresReportRepository,
    ReportRepository,
)
from keepwatch.services.moderation_service.store import (
    InMemoryModerationStore,
    ModerationStore,
    PostgresModerationStore,
)
from keepwatch.services.notification_service import (
    AuditLogDispatcher,
    DispatchExecutor,
    EmailDispatcher,
    MandatoryReportDispatcher,
    ModerationQueueDispatcher,
    PushDispatcher,
)
from keepwatch.services.safety_service import KeywordClassifier, SafetyConfig
from .config import PipelineSettings
from .pipeline import SafetyPipeline
from .router import EscalationRouter

logger = logging.getLogger(__name__)

# Returns the moderator id for an accepted bearer token, else None
AdminVerifier = Callable[[str], Optional[str]]


def token_verifier(expected_token: Optional[str], moderator_id: str = "admin") -> AdminVerifier:
    """Verifier accepting one shared token; rejects everything if unset."""
    def verify(token: str) -> Optional[str]:
        if not expected_token or not token:
            return None
        if hmac.compare_digest(token.encode(), expected_token.encode()):
            return moderator_id
        return None
    return verify


@dataclass
class Runtime:
    settings: PipelineSettings
    classifier: KeywordClassifier
    audit_logger: AuditLogger
    moderation_store: ModerationStore
    report_flow: MandatoryReportFlow
    deduplicator: AlertDeduplicator
    executor: DispatchExecutor
    pipeline: SafetyPipeline
    admin_verifier: AdminVerifier
    connection_manager: Optional[ConnectionManager] = None
    
    def require_shared_storage(self) -> None:
        """Refuse to serve a service on process-local stores.
        
        Raises:
            RuntimeError: STORAGE_BACKEND is memory
        """
        if self.settings.storage_backend == "memory":
            raise RuntimeError(
                "STORAGE_BACKEND=memory keeps state inside one process; "
                "set STORAGE_BACKEND=postgres to serve the services"
            )
    
    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)
        if self.connection_manager is not None:
            self.connection_manager.close()


def build_runtime(
    settings: Optional[PipelineSettings] = None,
    admin_verifier: Optional[AdminVerifier] = None,
) -> Runtime:
    """Construct every component for the configured backend.
    
    Raises:
        ValueError: Unknown STORAGE_BACKEND
    """
    settings = settings or PipelineSettings.from_env()
    configure_pii_salt(settings.pii_hash_salt)
    
    classifier = KeywordClassifier(SafetyConfig(flag_threshold=settings.flag_threshold))
    manager: Optional[ConnectionManager] = None
    
    if settings.storage_backend == "postgres":
        manager = get_connection_manager()
        manager.apply_schema()
        cooldown_store: CooldownStore = PostgresCooldownStore(manager)
        moderation_store: ModerationStore = PostgresModerationStore(manager, classifier)
        report_repository: ReportRepository = PostgresReportRepository(manager)
        audit_repository = AuditRepository(manager)
    elif settings.storage_backend == "memory":
        cooldown_store = InMemoryCooldownStore()
        moderation_store = InMemoryModerationStore(classifier)
        report_repository = InMemoryReportRepository()
        audit_repository = AuditRepository()
    else:
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
    
    audit_logger = AuditLogger(audit_repository)
    email = EmailDispatcher(
        sender=settings.alert_from_email,
        recipients=settings.pastor_emails,
        admin_base_url=settings.admin_base_url,
        region=settings.aws_region,
        timeout_seconds=settings.dispatch_timeout_seconds,
    )
    push = PushDispatcher(
        topic_arn=settings.push_topic_arn,
        admin_base_url=settings.admin_base_url,
        region=settings.aws_region,
        timeout_seconds=settings.dispatch_timeout_seconds,
    )
    report_flow = MandatoryReportFlow(
        repository=report_repository,
        email_sender=email,
        ops_email=settings.ops_email,
        admin_base_url=settings.admin_base_url,
        audit_logger=audit_logger,
    )
    executor = DispatchExecutor(
        {
            Channel.EMAIL: email,
            Channel.PUSH: push,
            Channel.AUDIT_LOG: AuditLogDispatcher(audit_logger),
            Channel.MODERATION_QUEUE: ModerationQueueDispatcher(
                moderation_store,
                flag_threshold=settings.flag_threshold,
                audit_logger=audit_logger,
            ),
            Channel.MANDATORY_REPORT: MandatoryReportDispatcher(report_flow),
        },
        max_workers=settings.dispatch_workers,
    )
    deduplicator = AlertDeduplicator(
        cooldown_store,
        window=timedelta(hours=settings.alert_cooldown_hours),
    )
    pipeline = SafetyPipeline(
        classifier=classifier,
        deduplicator=deduplicator,
        router=EscalationRouter(settings.flag_threshold),
        executor=executor,
        moderation_store=moderation_store,
    )
    
    logger.info(
        "RUNTIME_BUILT",
        extra={
            "storage_backend": settings.storage_backend,
            "email_configured": email.configured,
            "push_configured": bool(settings.push_topic_arn),
        }
    )
    
    return Runtime(
        settings=settings,
        classifier=classifier,
        audit_logger=audit_logger,
        moderation_store=moderation_store,
        report_flow=report_flow,
        deduplicator=deduplicator,
        executor=executor,
        pipeline=pipeline,
        admin_verifier=admin_verifier or token_verifier(settings.admin_api_token),
        connection_manager=manager,
    )


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or build the process-wide runtime from the environment."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = build_runtime()
        return _runtime
