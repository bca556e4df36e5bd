# notifeed/services/aggregator.py
"""
Deduplicates and groups a flat list of notification records into the
list shown to the user.

The functions here are pure: they never mutate their input and always
work from the complete list, so callers re-run ``aggregate`` after every
change instead of patching the previous result.
"""
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, Hashable, Iterable, List, Sequence, Tuple

from notifeed.models.feed_state import DisplayEntry
from notifeed.models.notification import GroupedEntry, NotificationRecord, NotificationType

MAX_LEAD_NAMES = 2

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

# phrase templates per locale
MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "separator": ", ",
        "others": " and {count} others",
        "liked_and_commented": "{names} liked and commented on your post",
        "liked": "{names} liked your post",
        "commented": "{names} commented on your post",
    },
    "vi": {
        "separator": ", ",
        "others": " và {count} người khác",
        "liked_and_commented": "{names} đã thích và bình luận về bài viết của bạn",
        "liked": "{names} đã thích bài viết của bạn",
        "commented": "{names} đã bình luận về bài viết của bạn",
    },
}
DEFAULT_LOCALE = "en"


def recency_key(record: NotificationRecord) -> Tuple[bool, datetime, int]:
    """
    Sort key for "newest first" ordering (use with ``reverse=True``).
    A missing ``createdAt`` means "just now" and sorts above everything;
    equal timestamps fall back to the id so the order is deterministic.
    """
    created = record.createdAt
    return (created is None, created or _OLDEST, record.id)


def _dedup_key(record: NotificationRecord) -> Hashable:
    if record.type == NotificationType.LIKE.value and record.postId is not None:
        return ("like", record.postId, record.senderId, record.type)
    return ("id", record.id)


def deduplicate(records: Iterable[NotificationRecord]) -> List[NotificationRecord]:
    """
    Collapses repeated likes from one sender on one post down to the most
    recent one. Every other record is only collapsed with an exact id
    duplicate, in which case the later occurrence wins.
    """
    unique: "OrderedDict[Hashable, NotificationRecord]" = OrderedDict()
    for record in records:
        key = _dedup_key(record)
        existing = unique.get(key)
        if key[0] == "like" and existing is not None:
            if recency_key(record) > recency_key(existing):
                unique[key] = record
        else:
            unique[key] = record
    return list(unique.values())


def _lead_names(group: Sequence[NotificationRecord]) -> List[str]:
    names: List[str] = []
    for record in group:
        if record.senderName not in names:
            names.append(record.senderName)
        if len(names) == MAX_LEAD_NAMES:
            break
    return names


def compose_group_message(
    lead_names: Sequence[str],
    others: int,
    like_count: int,
    comment_count: int,
    locale: str = DEFAULT_LOCALE,
) -> str:
    """
    Builds the summary line of a grouped entry, e.g.
    "Lan, Minh and 1 others liked and commented on your post".
    Returns an empty string when the group has neither likes nor comments.
    """
    phrases = MESSAGES.get(locale, MESSAGES[DEFAULT_LOCALE])
    names = phrases["separator"].join(lead_names)
    if others > 0:
        names += phrases["others"].format(count=others)

    if like_count > 0 and comment_count > 0:
        template = phrases["liked_and_commented"]
    elif like_count > 0:
        template = phrases["liked"]
    elif comment_count > 0:
        template = phrases["commented"]
    else:
        return ""
    return template.format(names=names)


def build_group(group: Sequence[NotificationRecord], locale: str = DEFAULT_LOCALE) -> DisplayEntry:
    if len(group) == 1:
        return group[0]

    ordered = sorted(group, key=recency_key, reverse=True)
    head = ordered[0]

    like_count = sum(1 for r in ordered if r.type == NotificationType.LIKE.value)
    comment_count = sum(1 for r in ordered if r.type == NotificationType.COMMENT.value)
    lead_names = _lead_names(ordered)
    others = 0
    if len({r.senderName for r in ordered}) > len(lead_names):
        # counts members, not distinct senders
        others = len(ordered) - len(lead_names)

    message = compose_group_message(lead_names, others, like_count, comment_count, locale)

    data = head.model_dump()
    data.update(
        message=message or head.message,
        isRead=all(r.isRead for r in ordered),
    )
    return GroupedEntry(
        **data,
        memberIds=[r.id for r in ordered],
        likeCount=like_count,
        commentCount=comment_count,
        leadNames=lead_names,
    )


def aggregate(records: Iterable[NotificationRecord], locale: str = DEFAULT_LOCALE) -> List[DisplayEntry]:
    """
    Turns the full flat record list into the display list:
    deduplicate, group by post, summarize groups, sort newest first.
    """
    deduplicated = deduplicate(records)

    by_post: "OrderedDict[int, List[NotificationRecord]]" = OrderedDict()
    entries: List[DisplayEntry] = []
    for record in deduplicated:
        if record.postId is None:
            entries.append(record)
        else:
            by_post.setdefault(record.postId, []).append(record)

    for group in by_post.values():
        entries.append(build_group(group, locale))

    return sorted(entries, key=recency_key, reverse=True)


def count_unread(entries: Iterable[DisplayEntry]) -> int:
    """
    Unread display entries; a group with any unread member counts once.
    """
    return sum(1 for entry in entries if not entry.isRead)
