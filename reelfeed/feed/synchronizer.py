from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Optional

from ..auth import AuthSession
from ..config import DEFAULT_PAGE_SIZE, DEFAULT_SORT_FIELD, DEFAULT_VISIBLE_STATUSES
from ..errors import AuthError, DecodeError
from ..models import FeedState, FeedTab, VideoRecord
from ..observable import Observable
from ..store.document_store import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    Increment,
    ListenerRegistration,
    Query,
)

logger = logging.getLogger(__name__)

QueryModifier = Callable[[Query, FeedTab], Query]


def decode_videos(docs: list[DocumentSnapshot]) -> list[VideoRecord]:
    """Decode a batch of video documents, dropping the ones that don't parse."""
    records = []
    for doc in docs:
        try:
            records.append(VideoRecord.from_document(doc.id, doc.data))
        except DecodeError as e:
            logger.warning(f"Skipping malformed video {doc.id}: {e}")
    return records


class FeedSynchronizer(Observable):
    """Paginated video feed with a live head window.

    load_initial() fetches the first page and starts a listener over that same
    first-page query. Each listener snapshot replaces the head window, which is
    the records decoded from the first page or from the previous snapshot.
    Pages appended by load_more() beyond that window are never live-updated
    until the next refresh().

    Entry points check and set their busy flag under the state lock before any
    I/O. A call that loses the race returns immediately without queueing.
    """

    def __init__(
        self,
        store: DocumentStore,
        session: Optional[AuthSession] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort_field: str = DEFAULT_SORT_FIELD,
        visible_statuses=tuple(DEFAULT_VISIBLE_STATUSES),
        query_modifier: Optional[QueryModifier] = None,
        collection: str = "videos",
    ):
        super().__init__(FeedState())
        self.store = store
        self.session = session
        self.page_size = page_size
        self.sort_field = sort_field
        self.visible_statuses = tuple(visible_statuses or ())
        self.query_modifier = query_modifier
        self.collection = collection

        self._cursor: Optional[DocumentSnapshot] = None
        self._listener: Optional[ListenerRegistration] = None
        # Number of leading items owned by the live listener
        self._head_len = 0
        # Bumped whenever the feed restarts; results tagged with an older
        # generation are discarded.
        self._generation = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def items(self) -> tuple:
        return self.snapshot().items

    @property
    def cursor(self) -> Optional[DocumentSnapshot]:
        with self._lock:
            return self._cursor

    @property
    def is_listening(self) -> bool:
        with self._lock:
            return self._listener is not None

    def base_query(self, tab: FeedTab) -> Query:
        """Ordering + status filter + tab modifier, without limit or cursor."""
        query = Query(self.collection).ordered_by(self.sort_field, descending=True)
        if self.visible_statuses:
            query = query.where_field_in("status", self.visible_statuses)
        if self.query_modifier is not None:
            query = self.query_modifier(query, tab)
        elif tab == FeedTab.FOLLOWING:
            logger.debug("Following tab has no query modifier, using the unfiltered feed")
        return query

    def _update(self, **changes):
        with self._lock:
            self._set_state(replace(self._state, **changes))

    # ------------------------------------------------------------------
    # Paging
    # ------------------------------------------------------------------

    def load_initial(self):
        """Fetch the first page, replace items wholesale and (re)start the listener."""
        with self._lock:
            if self._state.loading:
                logger.debug("Skipping load_initial: already loading")
                return
            self._generation += 1
            generation = self._generation
            tab = self._state.active_tab
            self._update(loading=True)

        logger.info(f"Fetching first feed page (page_size={self.page_size}, tab={tab.name})")
        try:
            query = self.base_query(tab).limited_to(self.page_size)
            docs = self.store.query(query)
            records = decode_videos(docs)

            with self._lock:
                if generation != self._generation:
                    logger.debug("Discarding stale first page")
                    return
                self._cursor = docs[-1] if docs else None
                self._head_len = len(records)
                self._update(
                    items=tuple(records),
                    cursor_id=self._cursor.id if self._cursor else None,
                    exhausted=len(docs) == 0,
                    last_error=None,
                )
                self._start_listener(query, generation)
            logger.info(f"Loaded {len(records)} videos")
        except Exception as e:
            logger.error(f"Error fetching initial videos: {e}")
            self._update(last_error=e)
        finally:
            self._update(loading=False)

    def load_more(self):
        """Append the next page after the cursor."""
        with self._lock:
            state = self._state
            if state.loading or state.loading_more or state.exhausted or self._cursor is None:
                logger.debug(
                    f"Skipping load_more: loading={state.loading}, "
                    f"loading_more={state.loading_more}, exhausted={state.exhausted}, "
                    f"cursor={self._cursor.id if self._cursor else None}"
                )
                return
            generation = self._generation
            cursor = self._cursor
            tab = state.active_tab
            self._update(loading_more=True)

        logger.info(f"Loading more videos after {cursor.id}")
        try:
            query = self.base_query(tab).starting_after(cursor).limited_to(self.page_size)
            docs = self.store.query(query)
            records = decode_videos(docs)

            with self._lock:
                if generation != self._generation:
                    logger.debug("Discarding page fetched before a refresh")
                    return
                seen = {r.id for r in self._state.items}
                fresh = tuple(r for r in records if r.id not in seen)
                if len(fresh) < len(records):
                    logger.debug(f"Dropped {len(records) - len(fresh)} duplicate videos")
                if docs:
                    self._cursor = docs[-1]
                self._update(
                    items=self._state.items + fresh,
                    cursor_id=self._cursor.id if self._cursor else None,
                    exhausted=len(docs) < self.page_size,
                    last_error=None,
                )
            logger.info(f"Loaded {len(fresh)} more videos")
        except Exception as e:
            logger.error(f"Error loading more videos: {e}")
            self._update(last_error=e)
        finally:
            self._update(loading_more=False)

    def refresh(self):
        """Drop the listener and cursor, then reload the first page."""
        with self._lock:
            if self._state.loading:
                logger.debug("Skipping refresh: initial load in flight")
                return
            logger.info("Refreshing video feed")
            self._stop_listener()
            self._generation += 1
            self._cursor = None
            self._head_len = 0
            self._update(cursor_id=None, exhausted=False)
        self.load_initial()

    def set_filter(self, tab: FeedTab) -> bool:
        """Switch tabs and refresh. Returns False when nothing changed."""
        tab = FeedTab(tab)
        with self._lock:
            if tab == self._state.active_tab:
                return False
            if self._state.loading:
                logger.debug(f"Ignoring tab switch to {tab.name}: initial load in flight")
                return False
            logger.info(f"Switching to tab: {tab.name}")
            self._update(active_tab=tab)
        self.refresh()
        return True

    def close(self):
        with self._lock:
            self._stop_listener()

    # ------------------------------------------------------------------
    # Live head window
    # ------------------------------------------------------------------

    def _start_listener(self, query: Query, generation: int):
        self._stop_listener()
        logger.debug("Starting realtime listener for the first page")

        def on_snapshot(docs, error):
            self._on_snapshot(generation, docs, error)

        self._listener = self.store.listen(query, on_snapshot)

    def _stop_listener(self):
        if self._listener is not None:
            self._listener.remove()
            self._listener = None
            logger.debug("Removed realtime listener")

    def _on_snapshot(self, generation: int, docs, error):
        if error is not None:
            logger.error(f"Realtime listener error: {error}")
            self._update(last_error=error)
            return

        records = tuple(decode_videos(docs or []))
        with self._lock:
            if generation != self._generation:
                return
            items = self._state.items
            head_len = min(self._head_len, len(items))
            if records != items[:head_len]:
                logger.info(f"Applying realtime update to head window ({len(records)} videos)")
                self._update(items=records + items[head_len:])
            self._head_len = len(records)

    # ------------------------------------------------------------------
    # Likes
    # ------------------------------------------------------------------

    def toggle_like(self, video_id: str) -> bool:
        """Like or unlike a video for the signed-in user. Returns the new liked state.

        The membership marker and the counter change commit in one transaction.
        The cached item is patched only after the commit succeeds.
        """
        if self.session is None:
            raise AuthError("No session attached to the feed")
        user_id = self.session.require_user()

        liked_path = f"users/{user_id}/likedVideos/{video_id}"
        video_path = f"{self.collection}/{video_id}"

        def apply(txn):
            video = txn.get(video_path)
            current = video.get("like_count", 0) if video else 0
            if txn.get(liked_path) is not None:
                txn.delete(liked_path)
                txn.update(video_path, {"like_count": Increment(-1)})
                return False, current - 1
            txn.set(liked_path, {"video_id": video_id, "liked_at": SERVER_TIMESTAMP})
            txn.update(video_path, {"like_count": Increment(1)})
            return True, current + 1

        liked, like_count = self.store.run_transaction(apply)
        logger.info(f"{user_id} {'liked' if liked else 'unliked'} video {video_id}")

        with self._lock:
            items = tuple(
                replace(r, like_count=like_count) if r.id == video_id else r
                for r in self._state.items
            )
            self._update(items=items)
        return liked
