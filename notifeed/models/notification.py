# notifeed/models/notification.py
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class NotificationType(str, Enum):
    LIKE = "LIKE"
    COMMENT = "COMMENT"
    FRIEND_REQUEST = "FRIEND_REQUEST"
    FRIEND_ACCEPT = "FRIEND_ACCEPT"


class NotificationRecord(BaseModel):
    """
    One server-issued notification, exactly as it travels on the wire.
    `type` stays a plain string so unknown server types survive parsing.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    senderId: int
    senderName: str
    senderAvatarUrl: Optional[str] = None
    senderEmail: Optional[str] = None
    type: str
    postId: Optional[int] = None
    message: str = ""
    isRead: bool = False
    createdAt: Optional[datetime] = None

    @field_validator("createdAt")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # the backend serializes LocalDateTime without offset
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class GroupedEntry(NotificationRecord):
    """
    Synthetic display entry standing for 2+ records on the same post.
    Identity fields come from the newest member.
    """
    memberIds: List[int]
    likeCount: int = 0
    commentCount: int = 0
    leadNames: List[str] = []


class NotificationPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: List[NotificationRecord]
    totalPages: int
