"""Moderation Service: community prayer requests under review.

Components:
- store.py: ModeratedItem and the in-memory / PostgreSQL queue stores
- handler.py: Admin endpoints (list, edit, hide, unhide, delete)
"""

from .store import (
    ItemMutation,
    ItemStatus,
    ModeratedItem,
    ModerationFilter,
    ModerationStore,
    InMemoryModerationStore,
    PostgresModerationStore,
    PrayerCategory,
)

__all__ = [
    "ItemMutation",
    "ItemStatus",
    "ModeratedItem",
    "ModerationFilter",
    "ModerationStore",
    "InMemoryModerationStore",
    "PostgresModerationStore",
    "PrayerCategory",
]
