# notifeed/models/feed_state.py
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict

from notifeed.models.notification import GroupedEntry, NotificationRecord

# GroupedEntry first so pydantic keeps the group fields on serialization
DisplayEntry = Union[GroupedEntry, NotificationRecord]


class FeedSnapshot(BaseModel):
    """
    Read-only view handed to presentation adapters.
    """
    model_config = ConfigDict(frozen=True)

    notifications: List[DisplayEntry]
    unreadCount: int
    page: Optional[int] = None
    hasMore: bool
    loading: bool
    error: Optional[str] = None
