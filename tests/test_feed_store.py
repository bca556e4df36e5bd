import asyncio

from conftest import record, wait_until, wire

from notifeed.models.feed_state import FeedSnapshot
from notifeed.services.aggregator import aggregate, count_unread
from notifeed.services.feed_store import FETCH_ERROR_MESSAGE, FeedStore


def _assert_consistent(store):
    ids = [r.id for r in store.records]
    assert len(ids) == len(set(ids))
    assert store.display == aggregate(store.records)
    assert store.unread_count == count_unread(store.display)


def _two_pages(history):
    history.pages = {
        0: [wire(i, "FRIEND_REQUEST", minute=100 - i) for i in range(1, 11)],
        1: [wire(i, "FRIEND_REQUEST", minute=100 - i) for i in range(11, 16)],
    }


async def test_fetch_first_then_second_page(store, history):
    _two_pages(history)

    await store.fetch_page(0)
    assert store.page == 0
    assert store.has_more is True
    assert len(store.records) == 10

    await store.fetch_page(1)
    assert store.page == 1
    assert store.has_more is False
    assert {r.id for r in store.records} == set(range(1, 16))
    assert store.unread_count == 15
    _assert_consistent(store)

    get = history.calls("GET", "/notifications")[-1]
    assert get.url.params["page"] == "1"
    assert get.url.params["size"] == "10"
    assert get.headers["Authorization"].startswith("Bearer ")


async def test_page_overlap_does_not_duplicate(store, history):
    history.pages = {
        0: [wire(1, "COMMENT", post_id=5, minute=9), wire(2, "COMMENT", post_id=6, minute=8)],
        # a newer record shifted id 2 onto the next page
        1: [wire(2, "COMMENT", post_id=6, minute=8), wire(3, "COMMENT", post_id=7, minute=1)],
    }

    await store.fetch_page(0)
    await store.fetch_page(1)

    assert [r.id for r in store.records] == [1, 2, 3]
    _assert_consistent(store)


async def test_page_zero_replaces_the_list(store, history):
    _two_pages(history)
    await store.fetch_page(0)
    await store.fetch_page(1)

    history.pages = {0: [wire(99, "FRIEND_ACCEPT", minute=200)]}
    await store.refresh()

    assert [r.id for r in store.records] == [99]
    assert store.page == 0
    assert store.has_more is False


async def test_failed_fetch_keeps_state_and_can_be_retried(store, history):
    _two_pages(history)
    await store.fetch_page(0)
    before = store.records

    history.fail_get = True
    await store.load_more()

    assert store.error == FETCH_ERROR_MESSAGE
    assert store.loading is False
    assert store.records == before
    assert store.page == 0

    history.fail_get = False
    await store.load_more()

    assert store.error is None
    assert store.page == 1
    assert len(store.records) == 15


async def test_concurrent_fetches_of_same_page_share_one_request(store, history):
    _two_pages(history)
    history.gate = asyncio.Event()

    first = asyncio.ensure_future(store.fetch_page(0))
    second = asyncio.ensure_future(store.fetch_page(0))
    await wait_until(lambda: len(history.requests) == 1)
    assert store.loading is True

    history.gate.set()
    await asyncio.gather(first, second)

    assert len(history.calls("GET", "/notifications")) == 1
    assert len(store.records) == 10
    assert store.loading is False


async def test_other_page_is_ignored_while_loading(store, history):
    _two_pages(history)
    history.gate = asyncio.Event()

    first = asyncio.ensure_future(store.fetch_page(0))
    await wait_until(lambda: store.loading)
    await store.fetch_page(1)
    await store.load_more()

    history.gate.set()
    await first

    pages = [r.url.params["page"] for r in history.calls("GET", "/notifications")]
    assert pages == ["0"]


async def test_load_more_stops_at_last_page(store, history):
    history.pages = {0: [wire(1, "FRIEND_REQUEST")]}

    await store.load_more()
    assert store.page == 0
    assert store.has_more is False

    await store.load_more()
    assert len(history.calls("GET", "/notifications")) == 1


async def test_push_during_refresh_is_not_lost(store, history):
    history.pages = {0: [wire(1, "FRIEND_REQUEST", minute=1)]}
    history.gate = asyncio.Event()

    fetch = asyncio.ensure_future(store.fetch_page(0))
    await wait_until(lambda: store.loading)
    store.ingest(record(50, "LIKE", post_id=3, minute=30))
    history.gate.set()
    await fetch

    assert {r.id for r in store.records} == {1, 50}
    _assert_consistent(store)


async def test_push_after_refresh_gives_same_records(store, history):
    history.pages = {0: [wire(1, "FRIEND_REQUEST", minute=1)]}

    await store.fetch_page(0)
    store.ingest(record(50, "LIKE", post_id=3, minute=30))

    assert {r.id for r in store.records} == {1, 50}
    _assert_consistent(store)


async def test_ingest_regroups_and_recounts(store, history):
    history.pages = {0: [wire(1, "LIKE", sender="Minh", sender_id=2, post_id=42, minute=2, read=True)]}
    await store.fetch_page(0)
    assert store.unread_count == 0

    store.ingest(record(2, "COMMENT", sender="Lan", sender_id=3, post_id=42, minute=5))

    assert store.records[0].id == 2
    assert len(store.display) == 1
    assert store.display[0].message == "Lan, Minh liked and commented on your post"
    assert store.unread_count == 1


async def test_ingest_same_id_twice_keeps_one_record(store):
    store.ingest(record(5, "COMMENT", post_id=1, minute=1))
    store.ingest(record(5, "COMMENT", post_id=1, minute=1))

    assert len(store.records) == 1
    _assert_consistent(store)


async def test_mark_as_read_resolves_group(store, history):
    history.pages = {0: [
        wire(1, "LIKE", sender="Lan", sender_id=10, post_id=42, minute=3, read=True),
        wire(2, "LIKE", sender="Minh", sender_id=11, post_id=42, minute=2, read=True),
        wire(3, "COMMENT", sender="Hoa", sender_id=12, post_id=42, minute=1),
    ]}
    await store.fetch_page(0)
    assert store.display[0].isRead is False
    assert store.unread_count == 1

    await store.mark_as_read(3)

    assert store.display[0].isRead is True
    assert store.unread_count == 0
    assert history.calls("PUT", "/notifications/3/read")
    _assert_consistent(store)


async def test_mark_as_read_failure_keeps_optimistic_change(store, history):
    history.pages = {0: [wire(1, "FRIEND_REQUEST")]}
    await store.fetch_page(0)
    history.fail_put = True

    await store.mark_as_read(1)

    assert store.records[0].isRead is True
    assert store.unread_count == 0
    assert store.error is None


async def test_mark_all_as_read(store, history):
    _two_pages(history)
    await store.fetch_page(0)
    history.fail_put = True

    await store.mark_all_as_read()

    assert all(r.isRead for r in store.records)
    assert store.unread_count == 0
    assert history.calls("PUT", "/notifications/read-all")


async def test_refresh_takes_read_state_from_server(store, history):
    history.pages = {0: [wire(1, "FRIEND_REQUEST")]}
    await store.fetch_page(0)
    history.fail_put = True
    await store.mark_as_read(1)

    await store.refresh()

    assert store.records[0].isRead is False
    assert store.unread_count == 1


async def test_reconcile_refreshes_after_failed_mutation(client, history):
    store = FeedStore(client, reconcile_on_mutation_error=True)
    history.pages = {0: [wire(1, "FRIEND_REQUEST")]}
    await store.fetch_page(0)
    history.fail_put = True

    await store.mark_all_as_read()
    await wait_until(lambda: len(history.calls("GET", "/notifications")) == 2)
    await wait_until(lambda: not store.loading)

    assert store.unread_count == 1
    await store.aclose()


async def test_reset_discards_in_flight_page(store, history):
    history.pages = {0: [wire(1, "FRIEND_REQUEST")]}
    history.gate = asyncio.Event()

    fetch = asyncio.ensure_future(store.fetch_page(0))
    await wait_until(lambda: store.loading)
    store.reset()
    history.gate.set()
    await fetch

    assert store.records == []
    assert store.page is None


async def test_subscribers_get_snapshots(store, history):
    seen = []
    seen_async = []

    async def async_subscriber(snapshot):
        seen_async.append(snapshot)

    unsubscribe = store.subscribe(seen.append)
    store.subscribe(async_subscriber)
    history.pages = {0: [wire(1, "FRIEND_REQUEST")]}

    await store.fetch_page(0)
    await wait_until(lambda: len(seen_async) == 2)

    assert all(isinstance(s, FeedSnapshot) for s in seen)
    # loading flag first, then the loaded page
    assert [s.loading for s in seen] == [True, False]
    assert seen[-1].unreadCount == 1

    unsubscribe()
    store.ingest(record(2, "FRIEND_ACCEPT"))
    assert len(seen) == 2


async def test_report_and_clear_error(store):
    store.report_error("push down")
    assert store.error == "push down"

    store.clear_error("something else")
    assert store.error == "push down"

    store.clear_error("push down")
    assert store.error is None


async def test_mark_as_read_during_refresh_is_kept(store, history):
    history.pages = {0: [wire(1, "FRIEND_REQUEST"), wire(2, "FRIEND_ACCEPT", minute=-1)]}
    await store.fetch_page(0)
    history.gate = asyncio.Event()

    refresh = asyncio.ensure_future(store.refresh())
    await wait_until(lambda: store.loading)
    await store.mark_as_read(1)
    assert store.unread_count == 1

    history.gate.set()
    await refresh

    assert store.records[0].isRead is True
    assert store.records[1].isRead is False
    assert store.unread_count == 1
    _assert_consistent(store)


async def test_mark_all_as_read_during_refresh_is_kept(store, history):
    history.pages = {0: [wire(1, "FRIEND_REQUEST"), wire(2, "FRIEND_ACCEPT", minute=-1)]}
    await store.fetch_page(0)
    history.gate = asyncio.Event()

    refresh = asyncio.ensure_future(store.refresh())
    await wait_until(lambda: store.loading)
    await store.mark_all_as_read()
    history.gate.set()
    await refresh

    assert store.unread_count == 0

    # a refresh issued afterwards takes the server's flags again
    history.gate = None
    await store.refresh()
    assert store.unread_count == 2
