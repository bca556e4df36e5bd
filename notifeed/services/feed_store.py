# notifeed/services/feed_store.py
"""
Single owner of the notification feed state.

All writers (page fetches, the push listener, read-state changes) go
through the operations below. After every write the display list and
the unread counter are derived again from the flat record list, so the
result never depends on the order in which fetches and pushed records
arrive.
"""
import asyncio
import inspect
import os
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

import structlog

from notifeed.errors import HistoryApiError
from notifeed.infra.history_client import HistoryClient
from notifeed.models.feed_state import DisplayEntry, FeedSnapshot
from notifeed.models.notification import NotificationRecord
from notifeed.services.aggregator import DEFAULT_LOCALE, aggregate, count_unread

PAGE_SIZE = int(os.getenv("NOTIFEED_PAGE_SIZE", "10"))
LOCALE = os.getenv("NOTIFEED_LOCALE", DEFAULT_LOCALE)

FETCH_ERROR_MESSAGE = "Failed to load notifications"

logger = structlog.get_logger(__name__)

Subscriber = Callable[[FeedSnapshot], Union[None, Awaitable[None]]]


class FeedStore:
    def __init__(
        self,
        client: HistoryClient,
        page_size: int = PAGE_SIZE,
        locale: str = LOCALE,
        reconcile_on_mutation_error: bool = False,
    ):
        self._client = client
        self._page_size = page_size
        self._locale = locale
        self._reconcile = reconcile_on_mutation_error

        self._records: List[NotificationRecord] = []
        self._display: List[DisplayEntry] = []
        self._unread = 0
        self._page: Optional[int] = None
        self._has_more = True
        self._error: Optional[str] = None

        # single-flight: page number -> the one task fetching it
        self._inflight: Dict[int, asyncio.Task] = {}
        # bumped by reset() so late responses from a previous session are dropped
        self._generation = 0
        # id -> sequence number of records that arrived over the push channel
        self._live_seq: Dict[int, int] = {}
        # id -> sequence number of local mark-read calls
        self._read_seq: Dict[int, int] = {}
        self._seq = 0

        self._subscribers: List[Subscriber] = []
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # read side
    # ------------------------------------------------------------------
    @property
    def records(self) -> List[NotificationRecord]:
        return list(self._records)

    @property
    def display(self) -> List[DisplayEntry]:
        return list(self._display)

    @property
    def unread_count(self) -> int:
        return self._unread

    @property
    def page(self) -> Optional[int]:
        return self._page

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def loading(self) -> bool:
        return bool(self._inflight)

    @property
    def error(self) -> Optional[str]:
        return self._error

    def snapshot(self) -> FeedSnapshot:
        return FeedSnapshot(
            notifications=list(self._display),
            unreadCount=self._unread,
            page=self._page,
            hasMore=self._has_more,
            loading=self.loading,
            error=self._error,
        )

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """
        Registers a callback receiving a FeedSnapshot after every change.
        Coroutine callbacks are scheduled on the running loop.
        Returns a function that removes the subscription.
        """
        self._subscribers.append(subscriber)

        def _unsubscribe():
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    # ------------------------------------------------------------------
    # history
    # ------------------------------------------------------------------
    async def fetch_page(self, page_num: int) -> None:
        """
        Loads one page from the history API. Page 0 replaces the list,
        later pages are appended. A call for a page that is already being
        fetched joins that fetch; a call for another page while a fetch is
        running is ignored. Failures land in `error` and leave the
        previous state untouched.
        """
        running = self._inflight.get(page_num)
        if running is not None:
            logger.debug("feed_fetch_joined", page=page_num)
            await asyncio.shield(running)
            return
        if self._inflight:
            logger.debug(
                "feed_fetch_skipped",
                page=page_num,
                inflight=sorted(self._inflight),
            )
            return

        task = asyncio.ensure_future(self._fetch(page_num, self._generation, self._seq))
        self._inflight[page_num] = task
        task.add_done_callback(lambda t: self._forget(page_num, t))
        self._error = None
        self._publish()
        await asyncio.shield(task)

    async def _fetch(self, page_num: int, generation: int, seq_at_start: int) -> None:
        try:
            result = await self._client.fetch_page(page_num, self._page_size)
        except HistoryApiError as e:
            self._forget(page_num, asyncio.current_task())
            if generation != self._generation:
                return
            logger.warning("feed_page_failed", page=page_num, error=str(e))
            self._error = FETCH_ERROR_MESSAGE
            self._publish()
            return

        self._forget(page_num, asyncio.current_task())
        if generation != self._generation:
            logger.debug("feed_page_discarded", page=page_num)
            return

        if page_num == 0:
            fresh_ids = {r.id for r in result.content}
            # pushed records that arrived while the request was out
            kept = [
                r for r in self._records
                if self._live_seq.get(r.id, 0) > seq_at_start and r.id not in fresh_ids
            ]
            # page 0 is authoritative, including read flags, except for
            # records marked read after the request went out
            self._records = kept
            self._live_seq = {i: s for i, s in self._live_seq.items() if i not in fresh_ids}
            for record in result.content:
                if self._read_seq.get(record.id, 0) > seq_at_start:
                    record = record.model_copy(update={"isRead": True})
                self._merge(record)
            self._read_seq = {i: s for i, s in self._read_seq.items() if s > seq_at_start}
        else:
            for record in result.content:
                self._merge(record)

        self._page = page_num
        self._has_more = page_num < result.totalPages - 1
        self._error = None
        self._recompute()
        logger.info(
            "feed_page_loaded",
            page=page_num,
            count=len(result.content),
            total_pages=result.totalPages,
            records=len(self._records),
        )
        self._publish()

    async def load_more(self) -> None:
        if self.loading or not self._has_more:
            return
        next_page = 0 if self._page is None else self._page + 1
        await self.fetch_page(next_page)

    async def refresh(self) -> None:
        await self.fetch_page(0)

    # ------------------------------------------------------------------
    # live records
    # ------------------------------------------------------------------
    def ingest(self, record: NotificationRecord) -> None:
        self._seq += 1
        self._live_seq[record.id] = self._seq
        self._merge(record, at_head=True)
        self._recompute()
        logger.info(
            "feed_record_ingested",
            id=record.id,
            type=record.type,
            post_id=record.postId,
            unread=self._unread,
        )
        self._publish()

    def report_error(self, message: str) -> None:
        self._error = message
        self._publish()

    def clear_error(self, message: str) -> None:
        """Clears `error` only if it still holds `message`."""
        if self._error == message:
            self._error = None
            self._publish()

    # ------------------------------------------------------------------
    # read state
    # ------------------------------------------------------------------
    async def mark_as_read(self, notification_id: int) -> None:
        self._seq += 1
        self._read_seq[notification_id] = self._seq
        self._records = [
            r.model_copy(update={"isRead": True}) if r.id == notification_id and not r.isRead else r
            for r in self._records
        ]
        self._recompute()
        self._publish()
        try:
            await self._client.mark_read(notification_id)
        except HistoryApiError as e:
            # optimistic change is kept
            logger.warning("feed_mark_read_failed", id=notification_id, error=str(e))
            self._after_mutation_error()

    async def mark_all_as_read(self) -> None:
        self._seq += 1
        for r in self._records:
            self._read_seq[r.id] = self._seq
        self._records = [
            r if r.isRead else r.model_copy(update={"isRead": True})
            for r in self._records
        ]
        self._recompute()
        self._publish()
        try:
            await self._client.mark_all_read()
        except HistoryApiError as e:
            logger.warning("feed_mark_all_read_failed", error=str(e))
            self._after_mutation_error()

    def reset(self) -> None:
        """Drops everything, e.g. on logout. In-flight responses are discarded."""
        self._generation += 1
        self._records = []
        self._live_seq = {}
        self._read_seq = {}
        self._page = None
        self._has_more = True
        self._error = None
        self._recompute()
        self._publish()

    async def aclose(self) -> None:
        for task in list(self._background) + list(self._inflight.values()):
            task.cancel()
        await asyncio.gather(*self._background, *self._inflight.values(), return_exceptions=True)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    @staticmethod
    def _keep_read_flag(
        incoming: NotificationRecord, existing: Optional[NotificationRecord]
    ) -> NotificationRecord:
        # isRead only ever goes false -> true
        if existing is not None and existing.isRead and not incoming.isRead:
            return incoming.model_copy(update={"isRead": True})
        return incoming

    def _forget(self, page_num: int, task: Optional[asyncio.Future]) -> None:
        if self._inflight.get(page_num) is task:
            del self._inflight[page_num]

    def _merge(self, record: NotificationRecord, at_head: bool = False) -> None:
        for index, existing in enumerate(self._records):
            if existing.id == record.id:
                self._records[index] = self._keep_read_flag(record, existing)
                return
        if at_head:
            self._records.insert(0, record)
        else:
            self._records.append(record)

    def _recompute(self) -> None:
        self._display = aggregate(self._records, self._locale)
        self._unread = count_unread(self._display)

    def _after_mutation_error(self) -> None:
        if not self._reconcile:
            return
        logger.info("feed_reconcile_scheduled")
        self._spawn(self.refresh())

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("feed_background_task_failed", error=str(task.exception()))

    def _publish(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(snapshot)
            except Exception:
                logger.exception("feed_subscriber_failed")
                continue
            if inspect.isawaitable(result):
                self._spawn(result)
