"""Moderation Queue Store - community prayer requests under review.

Users create items and bump counters; moderators edit, hide, unhide and
delete. Counters are incremented atomically by the backend and moderator
writes only touch the columns they name, so a concurrent edit can never
swallow a user's flag.
"""
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from keepwatch.shared.models import CategorySet
from keepwatch.shared.database import BaseRepository, ConnectionManager, NotFoundError
from keepwatch.shared.utils import hash_pii
from keepwatch.services.safety_service import KeywordClassifier

logger = logging.getLogger(__name__)

ANONYMOUS_NAME = "Anonymous"


class ItemStatus(Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"      # Excluded from public listings, visible to moderators


class PrayerCategory(Enum):
    HEALTH = "health"
    FAMILY = "family"
    WORK = "work"
    SPIRITUAL = "spiritual"
    OTHER = "other"


class ModerationFilter(Enum):
    """Moderator queue views."""
    ALL = "all"
    FLAGGED = "flagged"     # flag_count > 0
    CRISIS = "crisis"       # crisis_detected
    HIDDEN = "hidden"       # status == hidden


@dataclass(frozen=True)
class ModeratedItem:
    """A community prayer request and its moderation state."""
    id: str
    owner_id: str
    body: str
    category: PrayerCategory = PrayerCategory.OTHER
    is_anonymous: bool = False
    owner_name: str = ANONYMOUS_NAME
    owner_location: Optional[str] = None
    heart_count: int = 0
    flag_count: int = 0
    status: ItemStatus = ItemStatus.ACTIVE
    crisis_detected: bool = False
    spam_detected: bool = False
    needs_moderation: bool = False
    matched_keywords: Tuple[str, ...] = ()
    answered: bool = False
    praise_report: Optional[str] = None
    answered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    moderated_at: Optional[datetime] = None
    
    def matches(self, view: ModerationFilter) -> bool:
        if view == ModerationFilter.FLAGGED:
            return self.flag_count > 0
        if view == ModerationFilter.CRISIS:
            return self.crisis_detected
        if view == ModerationFilter.HIDDEN:
            return self.status == ItemStatus.HIDDEN
        return True
    
    def to_dict(self, public: bool = False) -> Dict[str, Any]:
        """JSON view. The public view drops owner id and moderation markers."""
        data = {
            "id": self.id,
            "owner_name": self.owner_name,
            "owner_location": self.owner_location,
            "body": self.body,
            "category": self.category.value,
            "is_anonymous": self.is_anonymous,
            "heart_count": self.heart_count,
            "answered": self.answered,
            "praise_report": self.praise_report,
            "answered_at": self.answered_at.isoformat() if self.answered_at else None,
            "created_at": self.created_at.isoformat(),
        }
        if public:
            return data
        
        data.update({
            "owner_id": self.owner_id,
            "flag_count": self.flag_count,
            "status": self.status.value,
            "crisis_detected": self.crisis_detected,
            "spam_detected": self.spam_detected,
            "needs_moderation": self.needs_moderation,
            "matched_keywords": list(self.matched_keywords),
            "updated_at": self.updated_at.isoformat(),
            "moderated_at": self.moderated_at.isoformat() if self.moderated_at else None,
        })
        return data


@dataclass(frozen=True)
class ItemMutation:
    """Moderator edit; None leaves a field unchanged."""
    body: Optional[str] = None
    category: Optional[PrayerCategory] = None
    
    @property
    def is_empty(self) -> bool:
        return self.body is None and self.category is None


class ModerationStore(ABC):
    """Operations shared by every backend.
    
    Backends supply keyed reads, inserts, deletes, atomic increments and
    `_update_fields`, a partial update of named columns.
    """
    
    def __init__(self, classifier: Optional[KeywordClassifier] = None):
        self.classifier = classifier or KeywordClassifier()
    
    def _screen(
        self,
        body: str,
        categories: Optional[CategorySet] = None,
        spam: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Classifier-derived markers for a body.
        
        Callers that already classified the body pass the results in.
        """
        if categories is None:
            categories = self.classifier.classify(body)
        if spam is None:
            spam = self.classifier.detect_spam(body)
        return {
            "crisis_detected": not categories.is_empty,
            "spam_detected": bool(spam),
            "matched_keywords": tuple(categories.keywords + spam),
        }
    
    def new_item(
        self,
        owner_id: str,
        body: str,
        category: PrayerCategory = PrayerCategory.OTHER,
        is_anonymous: bool = False,
        owner_name: Optional[str] = None,
        owner_location: Optional[str] = None,
        categories: Optional[CategorySet] = None,
        spam: Optional[List[str]] = None,
    ) -> ModeratedItem:
        """Build a classified item ready for create().
        
        Anonymous items carry no name or location.
        """
        markers = self._screen(body, categories, spam)
        now = datetime.utcnow()
        return ModeratedItem(
            id=f"prayer_{uuid.uuid4().hex[:16]}",
            owner_id=owner_id,
            body=body,
            category=category,
            is_anonymous=is_anonymous,
            owner_name=ANONYMOUS_NAME if is_anonymous else (owner_name or ANONYMOUS_NAME),
            owner_location=None if is_anonymous else owner_location,
            needs_moderation=markers["crisis_detected"] or markers["spam_detected"],
            created_at=now,
            updated_at=now,
            **markers,
        )
    
    @abstractmethod
    def create(self, item: ModeratedItem) -> ModeratedItem:
        pass
    
    @abstractmethod
    def get(self, item_id: str) -> ModeratedItem:
        """Return the item or raise NotFoundError."""
        pass
    
    @abstractmethod
    def list(
        self,
        view: ModerationFilter = ModerationFilter.ALL,
        limit: int = 100,
    ) -> List[ModeratedItem]:
        """Moderator listing, newest first."""
        pass
    
    @abstractmethod
    def list_public(self, limit: int = 100) -> List[ModeratedItem]:
        """Active items only, newest first."""
        pass
    
    @abstractmethod
    def delete(self, item_id: str) -> bool:
        pass
    
    @abstractmethod
    def increment_flag(self, item_id: str) -> int:
        """Atomically add one flag; returns the new count."""
        pass
    
    @abstractmethod
    def increment_heart(self, item_id: str) -> int:
        """Atomically add one heart; returns the new count."""
        pass
    
    @abstractmethod
    def _update_fields(self, item_id: str, fields: Dict[str, Any]) -> ModeratedItem:
        """Set only the named fields plus updated_at; raise NotFoundError."""
        pass
    
    def update(self, item_id: str, mutation: ItemMutation) -> ModeratedItem:
        """Apply a moderator edit.
        
        A new body is re-classified and counts as the moderator's
        acknowledgment, so needs_moderation is cleared.
        """
        if mutation.is_empty:
            return self.get(item_id)
        
        fields: Dict[str, Any] = {"moderated_at": datetime.utcnow()}
        if mutation.category is not None:
            fields["category"] = mutation.category
        if mutation.body is not None:
            fields["body"] = mutation.body
            fields.update(self._screen(mutation.body))
            fields["needs_moderation"] = False
        
        item = self._update_fields(item_id, fields)
        
        logger.info(
            "MODERATED_ITEM_UPDATED",
            extra={
                "item_id": item_id,
                "fields": sorted(k for k in fields if k != "moderated_at"),
                "crisis_detected": item.crisis_detected,
            }
        )
        return item
    
    def set_status(self, item_id: str, status: ItemStatus) -> ModeratedItem:
        item = self._update_fields(
            item_id,
            {"status": status, "moderated_at": datetime.utcnow()},
        )
        logger.info(
            "MODERATED_ITEM_STATUS_CHANGED",
            extra={"item_id": item_id, "status": status.value}
        )
        return item
    
    def mark_needs_moderation(self, item_id: str) -> ModeratedItem:
        return self._update_fields(item_id, {"needs_moderation": True})
    
    def mark_answered(
        self,
        item_id: str,
        owner_id: str,
        praise_report: Optional[str] = None,
    ) -> ModeratedItem:
        """Owner marks their request answered, optionally with a praise report.
        
        Raises:
            PermissionError: If owner_id does not own the item
        """
        item = self.get(item_id)
        if item.owner_id != owner_id:
            logger.warning(
                "MARK_ANSWERED_DENIED",
                extra={"item_id": item_id, "owner_id_hash": hash_pii(owner_id)}
            )
            raise PermissionError("Only the owner can mark a request answered")
        
        return self._update_fields(item_id, {
            "answered": True,
            "praise_report": (praise_report or "").strip() or None,
            "answered_at": datetime.utcnow(),
        })
    
    def stats(self) -> Dict[str, int]:
        """Queue counts as shown on the moderation dashboard."""
        items = self.list(ModerationFilter.ALL, limit=10000)
        return {
            "total": len(items),
            "flagged": sum(1 for i in items if i.matches(ModerationFilter.FLAGGED)),
            "crisis": sum(1 for i in items if i.matches(ModerationFilter.CRISIS)),
            "hidden": sum(1 for i in items if i.matches(ModerationFilter.HIDDEN)),
            "needs_moderation": sum(1 for i in items if i.needs_moderation),
        }


class InMemoryModerationStore(ModerationStore):
    """Lock-protected dict for development and tests."""
    
    def __init__(self, classifier: Optional[KeywordClassifier] = None):
        super().__init__(classifier)
        self._items: Dict[str, ModeratedItem] = {}
        self._lock = threading.Lock()
    
    def _require(self, item_id: str) -> ModeratedItem:
        item = self._items.get(item_id)
        if item is None:
            raise NotFoundError(f"Moderated item not found: {item_id}")
        return item
    
    def create(self, item: ModeratedItem) -> ModeratedItem:
        with self._lock:
            self._items[item.id] = item
        logger.info(
            "MODERATED_ITEM_CREATED",
            extra={"item_id": item.id, "needs_moderation": item.needs_moderation}
        )
        return item
    
    def get(self, item_id: str) -> ModeratedItem:
        with self._lock:
            return self._require(item_id)
    
    def list(
        self,
        view: ModerationFilter = ModerationFilter.ALL,
        limit: int = 100,
    ) -> List[ModeratedItem]:
        with self._lock:
            items = [i for i in self._items.values() if i.matches(view)]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items[:limit]
    
    def list_public(self, limit: int = 100) -> List[ModeratedItem]:
        with self._lock:
            items = [i for i in self._items.values() if i.status == ItemStatus.ACTIVE]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items[:limit]
    
    def delete(self, item_id: str) -> bool:
        with self._lock:
            return self._items.pop(item_id, None) is not None
    
    def _increment(self, item_id: str, counter: str) -> int:
        with self._lock:
            item = self._require(item_id)
            value = getattr(item, counter) + 1
            self._items[item_id] = replace(item, **{counter: value})
            return value
    
    def increment_flag(self, item_id: str) -> int:
        return self._increment(item_id, "flag_count")
    
    def increment_heart(self, item_id: str) -> int:
        return self._increment(item_id, "heart_count")
    
    def _update_fields(self, item_id: str, fields: Dict[str, Any]) -> ModeratedItem:
        with self._lock:
            item = replace(self._require(item_id), updated_at=datetime.utcnow(), **fields)
            self._items[item_id] = item
            return item


class PostgresModerationStore(BaseRepository[ModeratedItem], ModerationStore):
    """moderated_items table."""
    
    columns = (
        "id", "owner_id", "body", "category", "is_anonymous", "owner_name",
        "owner_location", "heart_count", "flag_count", "status",
        "crisis_detected", "spam_detected", "needs_moderation",
        "matched_keywords", "answered", "praise_report", "answered_at",
        "created_at", "updated_at", "moderated_at",
    )
    
    def __init__(
        self,
        connection_manager: ConnectionManager,
        classifier: Optional[KeywordClassifier] = None,
    ):
        BaseRepository.__init__(self, connection_manager, table_name="moderated_items")
        ModerationStore.__init__(self, classifier)
    
    def _row_to_entity(self, row: tuple) -> ModeratedItem:
        data = dict(zip(self.columns, row))
        keywords = data["matched_keywords"]
        if isinstance(keywords, str):
            keywords = json.loads(keywords)
        data["matched_keywords"] = tuple(keywords or ())
        data["category"] = PrayerCategory(data["category"])
        data["status"] = ItemStatus(data["status"])
        return ModeratedItem(**data)
    
    def _to_column(self, name: str, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if name == "matched_keywords":
            return json.dumps(list(value))
        return value
    
    def _entity_to_params(self, entity: ModeratedItem) -> Dict[str, Any]:
        return {
            name: self._to_column(name, getattr(entity, name))
            for name in self.columns
        }
    
    def create(self, item: ModeratedItem) -> ModeratedItem:
        saved = self.save(item)
        logger.info(
            "MODERATED_ITEM_CREATED",
            extra={"item_id": item.id, "needs_moderation": item.needs_moderation}
        )
        return saved
    
    def get(self, item_id: str) -> ModeratedItem:
        item = self.find_by_id(item_id)
        if item is None:
            raise NotFoundError(f"Moderated item not found: {item_id}")
        return item
    
    def _where(self, view: ModerationFilter) -> str:
        return {
            ModerationFilter.ALL: "",
            ModerationFilter.FLAGGED: " WHERE flag_count > 0",
            ModerationFilter.CRISIS: " WHERE crisis_detected",
            ModerationFilter.HIDDEN: " WHERE status = 'hidden'",
        }[view]
    
    def _fetch(self, where: str, limit: int) -> List[ModeratedItem]:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"{self.select_clause}{where} ORDER BY created_at DESC LIMIT %s",
                    (limit,)
                )
                return [self._row_to_entity(row) for row in cur.fetchall()]
    
    def list(
        self,
        view: ModerationFilter = ModerationFilter.ALL,
        limit: int = 100,
    ) -> List[ModeratedItem]:
        return self._fetch(self._where(view), limit)
    
    def list_public(self, limit: int = 100) -> List[ModeratedItem]:
        return self._fetch(" WHERE status = 'active'", limit)
    
    def _increment(self, item_id: str, counter: str) -> int:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE moderated_items SET {counter} = {counter} + 1 "
                    f"WHERE id = %s RETURNING {counter}",
                    (item_id,)
                )
                row = cur.fetchone()
            conn.commit()
        
        if row is None:
            raise NotFoundError(f"Moderated item not found: {item_id}")
        return row[0]
    
    def increment_flag(self, item_id: str) -> int:
        return self._increment(item_id, "flag_count")
    
    def increment_heart(self, item_id: str) -> int:
        return self._increment(item_id, "heart_count")
    
    def _update_fields(self, item_id: str, fields: Dict[str, Any]) -> ModeratedItem:
        fields = dict(fields, updated_at=datetime.utcnow())
        names = list(fields)
        assignments = ", ".join(f"{name} = %s" for name in names)
        params = [self._to_column(name, fields[name]) for name in names]
        params.append(item_id)
        
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE moderated_items SET {assignments} WHERE id = %s "
                    f"RETURNING {', '.join(self.columns)}",
                    params
                )
                row = cur.fetchone()
            conn.commit()
        
        if row is None:
            raise NotFoundError(f"Moderated item not found: {item_id}")
        return self._row_to_entity(row)
