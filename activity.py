"""Append-only project activity log."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from database import Store, StoreError, serialize, utcnow
from schemas import Activity, ActivityType

logger = logging.getLogger(__name__)

COLLECTION = "activity"


class ActivityRecorder:
    """Writes audit entries; entries are never updated or deleted."""

    def __init__(self, store: Store, page_size: int = 50) -> None:
        self.store = store
        self.page_size = page_size

    def record(
        self,
        project_id: str,
        actor_id: str,
        type_: Union[ActivityType, str],
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        task_id: Optional[str] = None,
    ) -> None:
        type_value = type_.value if isinstance(type_, ActivityType) else str(type_)
        try:
            self.store.insert_one(
                COLLECTION,
                {
                    "project_id": project_id,
                    "user_id": actor_id,
                    "task_id": task_id,
                    "type": type_value,
                    "message": message,
                    "metadata": dict(metadata or {}),
                    "created_at": utcnow(),
                },
            )
        except StoreError as exc:
            logger.error(
                "Failed to record %s activity for project %s: %s", type_value, project_id, exc
            )

    def list_for_project(self, project_id: str, limit: Optional[int] = None) -> List[Activity]:
        docs = self.store.find(
            COLLECTION,
            {"project_id": project_id},
            sort=[("created_at", -1), ("_id", -1)],
            limit=limit or self.page_size,
        )
        return [Activity.model_validate(serialize(d)) for d in docs]
