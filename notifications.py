"""Notification records addressed to a single recipient."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Union

from database import Store, StoreError, serialize, utcnow
from errors import Forbidden, NotFound
from schemas import Notification, NotificationType

logger = logging.getLogger(__name__)

COLLECTION = "notification"
NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


class NotificationDispatcher:
    def __init__(self, store: Store, page_size: int = 50) -> None:
        self.store = store
        self.page_size = page_size

    def notify(
        self,
        user_id: str,
        type_: Union[NotificationType, str],
        message: str,
        related_id: Optional[str] = None,
    ) -> Optional[Notification]:
        """Insert a notification for ``user_id``.

        Delivery is best-effort: a store failure is logged and ``None`` is returned
        so the operation that triggered the notification is never failed by it.
        """
        type_ = NotificationType(type_)
        try:
            doc = self.store.insert_one(
                COLLECTION,
                {
                    "user_id": user_id,
                    "type": type_.value,
                    "message": message,
                    "related_id": related_id,
                    "read": False,
                    "created_at": utcnow(),
                },
            )
        except StoreError:
            logger.exception("Failed to deliver %s notification to %s", type_.value, user_id)
            return None
        return Notification.model_validate(serialize(doc))

    def list_for(self, user_id: str, limit: Optional[int] = None) -> List[Notification]:
        docs = self.store.find(
            COLLECTION, {"user_id": user_id}, sort=NEWEST_FIRST, limit=limit or self.page_size
        )
        return [Notification.model_validate(serialize(d)) for d in docs]

    def _owned(self, notification_id: str, acting_user_id: str) -> dict:
        doc = self.store.find_one(COLLECTION, {"_id": notification_id})
        if not doc:
            raise NotFound("Notification not found")
        if doc["user_id"] != acting_user_id:
            raise Forbidden("Notification belongs to another user")
        return doc

    def mark_read(self, notification_id: str, acting_user_id: str) -> None:
        self._owned(notification_id, acting_user_id)
        self.store.update_one(COLLECTION, {"_id": notification_id}, {"read": True})

    def mark_all_read(self, acting_user_id: str) -> int:
        return self.store.update_many(COLLECTION, {"user_id": acting_user_id, "read": False}, {"read": True})

    def delete(self, notification_id: str, acting_user_id: str) -> None:
        self._owned(notification_id, acting_user_id)
        self.store.delete_one(COLLECTION, {"_id": notification_id})

    def clear_all(self, acting_user_id: str) -> int:
        return self.store.delete_many(COLLECTION, {"user_id": acting_user_id})

    def resolve_invites(
        self, user_id: str, related_id: str, types: Iterable[Union[NotificationType, str]]
    ) -> int:
        """Mark a user's outstanding invite notifications for ``related_id`` as read."""
        query = {
            "user_id": user_id,
            "related_id": related_id,
            "type": {"$in": [NotificationType(t).value for t in types]},
            "read": False,
        }
        return self.store.update_many(COLLECTION, query, {"read": True})
