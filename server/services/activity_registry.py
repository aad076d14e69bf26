"""
Activity Registry
=================

Ephemeral, never-persisted activities (for instance a dependency-ordered
batch build that is still dispatching). They can be listed and cancelled
by id like sessions, which makes this registry the fallback when a
cancellation request names an id the session store does not know.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class Activity:
    id: str
    project_id: str
    kind: str
    label: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancel_callback: Optional[Callable[[], None]] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "kind": self.kind,
            "label": self.label,
            "startedAt": self.started_at.isoformat(),
        }


class ActivityRegistry:
    def __init__(self):
        self._activities: dict[str, Activity] = {}
        self._lock = threading.Lock()

    def register(self, activity: Activity) -> None:
        with self._lock:
            self._activities[activity.id] = activity
        logger.debug("Registered %s activity %s", activity.kind, activity.id)

    def unregister(self, activity_id: str) -> bool:
        with self._lock:
            return self._activities.pop(activity_id, None) is not None

    def get(self, activity_id: str) -> Optional[Activity]:
        with self._lock:
            return self._activities.get(activity_id)

    def cancel(self, activity_id: str) -> bool:
        """Run the activity's cancel callback and drop it. False if unknown."""
        with self._lock:
            activity = self._activities.pop(activity_id, None)
        if activity is None:
            return False
        if activity.cancel_callback is not None:
            try:
                activity.cancel_callback()
            except Exception as e:
                logger.warning("Cancel callback failed for activity %s: %s", activity_id, e)
        logger.info("Cancelled %s activity %s", activity.kind, activity_id)
        return True

    def list_by_project(self, project_id: str) -> list[Activity]:
        with self._lock:
            return [a for a in self._activities.values() if a.project_id == project_id]
