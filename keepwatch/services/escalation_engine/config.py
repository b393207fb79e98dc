"""Pipeline settings loaded from the environment."""
import os
from dataclasses import dataclass
from typing import Optional, Tuple


def _split_addresses(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class PipelineSettings:
    """Runtime configuration for the escalation pipeline.
    
    Email, push and ops settings are optional; an unconfigured channel
    fails its jobs with a logged error instead of blocking the others.
    """
    storage_backend: str = "memory"
    pastor_emails: Tuple[str, ...] = ()
    alert_from_email: Optional[str] = None
    ops_email: Optional[str] = None
    push_topic_arn: Optional[str] = None
    admin_base_url: str = "http://localhost:3000"
    aws_region: str = "us-east-1"
    dispatch_timeout_seconds: float = 5.0
    dispatch_workers: int = 8
    alert_cooldown_hours: int = 24
    flag_threshold: int = 3
    pii_hash_salt: str = "default_dev_salt_change_in_production_32chars"
    admin_api_token: Optional[str] = None
    
    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """Create settings from environment variables.
        
        Environment variables:
            STORAGE_BACKEND: memory or postgres (default memory)
            PASTOR_EMAIL: Comma-separated alert recipients
            ALERT_FROM_EMAIL: Verified SES sender
            OPS_EMAIL: Recipient for report write failures
            PASTOR_PUSH_TOPIC_ARN: SNS topic for pastor pushes
            ADMIN_BASE_URL: Admin UI base URL for record links
            AWS_REGION: AWS region (default us-east-1)
            DISPATCH_TIMEOUT_SECONDS: Outbound call timeout (default 5)
            DISPATCH_WORKERS: Dispatch thread pool size (default 8)
            ALERT_COOLDOWN_HOURS: Per-subject alert cooldown (default 24)
            FLAG_THRESHOLD: User flags before auto-hide (default 3)
            PII_HASH_SALT: Salt for hashing subject ids in logs
            ADMIN_API_TOKEN: Bearer token accepted on admin endpoints
        """
        defaults = cls()
        return cls(
            storage_backend=os.getenv("STORAGE_BACKEND", defaults.storage_backend).lower(),
            pastor_emails=_split_addresses(os.getenv("PASTOR_EMAIL")),
            alert_from_email=os.getenv("ALERT_FROM_EMAIL") or None,
            ops_email=os.getenv("OPS_EMAIL") or None,
            push_topic_arn=os.getenv("PASTOR_PUSH_TOPIC_ARN") or None,
            admin_base_url=os.getenv("ADMIN_BASE_URL", defaults.admin_base_url),
            aws_region=os.getenv("AWS_REGION", defaults.aws_region),
            dispatch_timeout_seconds=float(
                os.getenv("DISPATCH_TIMEOUT_SECONDS", str(defaults.dispatch_timeout_seconds))
            ),
            dispatch_workers=int(os.getenv("DISPATCH_WORKERS", str(defaults.dispatch_workers))),
            alert_cooldown_hours=int(
                os.getenv("ALERT_COOLDOWN_HOURS", str(defaults.alert_cooldown_hours))
            ),
            flag_threshold=int(os.getenv("FLAG_THRESHOLD", str(defaults.flag_threshold))),
            pii_hash_salt=os.getenv("PII_HASH_SALT", defaults.pii_hash_salt),
            admin_api_token=os.getenv("ADMIN_API_TOKEN") or None,
        )
