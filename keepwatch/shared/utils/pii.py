"""PII handling utilities.

Subject identifiers are hashed before they reach logs, and submitted text is
truncated before it is embedded in any outbound message.
"""
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)


# Loaded from PII_HASH_SALT at service startup
_PII_SALT: Optional[str] = None

# Upper bound on submitted text carried in emails, pushes and log fields
MAX_EXCERPT_CHARS = 280


def configure_pii_salt(salt: str) -> None:
    """Configure the PII hashing salt.
    
    Must be called during application startup before any PII hashing.
    
    Args:
        salt: Secret salt value
        
    Raises:
        ValueError: If salt is empty or too short
    """
    global _PII_SALT
    if not salt or len(salt) < 32:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": 32}
        )
        raise ValueError("PII salt must be at least 32 characters")
    
    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def hash_pii(value: str) -> str:
    """Hash a PII value for safe logging.
    
    Uses SHA-256 with a secret salt to create a consistent, 
    non-reversible hash of subject identifiers.
    
    Args:
        value: The PII value to hash (user ID, session ID, email)
        
    Returns:
        Hashed string safe for logging
        
    Raises:
        RuntimeError: If PII salt has not been configured
    """
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")
    
    salted = f"{_PII_SALT}{value}"
    return hashlib.sha256(salted.encode()).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """Fingerprint submitted text for the audit trail without storing it."""
    return hashlib.sha256(text.encode()).hexdigest()


def truncate_excerpt(text: str, limit: int = MAX_EXCERPT_CHARS) -> str:
    """Bound submitted text before it leaves the request.
    
    Collapses whitespace and cuts at `limit` characters, marking the cut
    with an ellipsis.
    
    Example:
        >>> truncate_excerpt("a  b\\n c", limit=10)
        'a b c'
    """
    collapsed = " ".join((text or "").split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: max(limit - 1, 0)].rstrip() + "…"
