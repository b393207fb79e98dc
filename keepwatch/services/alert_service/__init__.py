"""Alert Service: per-subject alert deduplication.

Components:
- deduplicator.py: AlertDeduplicator with the 24h cooldown window
- cooldown_store.py: In-memory and PostgreSQL cooldown stores
"""

from .cooldown_store import (
    AlertCooldownRecord,
    CooldownStore,
    InMemoryCooldownStore,
    PostgresCooldownStore,
)
from .deduplicator import AlertDeduplicator, CooldownClaim, COOLDOWN_WINDOW

__all__ = [
    "AlertCooldownRecord",
    "CooldownStore",
    "InMemoryCooldownStore",
    "PostgresCooldownStore",
    "AlertDeduplicator",
    "CooldownClaim",
    "COOLDOWN_WINDOW",
]
