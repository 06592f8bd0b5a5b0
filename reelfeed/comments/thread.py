from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Optional

from ..auth import AuthSession
from ..config import DEFAULT_COMMENT_MAX_LENGTH
from ..errors import AuthError, DecodeError, ValidationError
from ..models import CommentRecord, CommentsState, utcnow
from ..observable import Observable
from ..store.document_store import (
    SERVER_TIMESTAMP,
    DocumentStore,
    Increment,
    ListenerRegistration,
    Query,
)

logger = logging.getLogger(__name__)


class CommentThread(Observable):
    """Comments under videos/{video_id}/comments, newest first.

    Every write is committed remotely first; the local list is patched only
    after the commit succeeds. Patches are idempotent with the live listener,
    which may already have delivered the same change.
    """

    def __init__(
        self,
        video_id: str,
        store: DocumentStore,
        session: AuthSession,
        max_length: int = DEFAULT_COMMENT_MAX_LENGTH,
    ):
        super().__init__(CommentsState())
        self.video_id = video_id
        self.store = store
        self.session = session
        self.max_length = max_length
        self._listener: Optional[ListenerRegistration] = None

    @property
    def comments(self) -> tuple:
        return self.snapshot().comments

    @property
    def video_path(self) -> str:
        return f"videos/{self.video_id}"

    def comment_path(self, comment_id: str) -> str:
        return f"{self.video_path}/comments/{comment_id}"

    def like_path(self, comment_id: str, user_id: str) -> str:
        return f"{self.comment_path(comment_id)}/likes/{user_id}"

    def _update(self, **changes):
        with self._lock:
            self._set_state(replace(self._state, **changes))

    # ------------------------------------------------------------------
    # Listener
    # ------------------------------------------------------------------

    def start(self):
        """Start (or restart) the live listener over this video's comments."""
        with self._lock:
            self._stop_listener()
            self._update(loading=True)
            query = Query(f"{self.video_path}/comments").ordered_by("created_at", descending=True)
            self._listener = self.store.listen(query, self._on_snapshot)

    def close(self):
        with self._lock:
            self._stop_listener()

    def _stop_listener(self):
        if self._listener is not None:
            self._listener.remove()
            self._listener = None

    def _on_snapshot(self, docs, error):
        if error is not None:
            logger.error(f"Error listening for comments on {self.video_id}: {error}")
            self._update(last_error=error, loading=False)
            return

        comments = []
        for doc in docs or []:
            try:
                comments.append(CommentRecord.from_document(self.video_id, doc.id, doc.data))
            except DecodeError as e:
                logger.warning(f"Skipping malformed comment {doc.id}: {e}")
        self._update(comments=tuple(comments), loading=False)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _validate_text(self, text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment must not be empty")
        if len(text) > self.max_length:
            raise ValidationError(
                f"Comment is {len(text)} characters; the limit is {self.max_length}"
            )
        return text

    def _find(self, comment_id: str) -> Optional[CommentRecord]:
        for c in self.comments:
            if c.id == comment_id:
                return c
        doc = self.store.get(self.comment_path(comment_id))
        if doc is None:
            return None
        try:
            return CommentRecord.from_document(self.video_id, doc.id, doc.data)
        except DecodeError as e:
            logger.warning(f"Treating malformed comment {comment_id} as missing: {e}")
            return None

    def _require_author(self, comment_id: str) -> CommentRecord:
        user_id = self.session.require_user()
        comment = self._find(comment_id)
        if comment is None:
            raise ValidationError(f"No comment {comment_id} on video {self.video_id}")
        if comment.author_id != user_id:
            raise AuthError("Only the author can change this comment")
        return comment

    def add_comment(self, text: str) -> CommentRecord:
        """Create a comment and bump the video's comment_count in one batch."""
        user_id = self.session.require_user()
        text = self._validate_text(text)

        comment = CommentRecord(
            id=uuid.uuid4().hex,
            video_id=self.video_id,
            author_id=user_id,
            text=text,
            created_at=utcnow(),
        )

        self._update(submitting=True)
        try:
            batch = self.store.batch()
            batch.set(self.comment_path(comment.id), comment.to_document())
            batch.update(self.video_path, {"comment_count": Increment(1)})
            batch.commit()
        finally:
            self._update(submitting=False)

        logger.info(f"{user_id} commented on {self.video_id}")
        with self._lock:
            if all(c.id != comment.id for c in self._state.comments):
                self._update(comments=(comment,) + self._state.comments)
        return comment

    def edit_comment(self, comment_id: str, new_text: str) -> CommentRecord:
        comment = self._require_author(comment_id)
        new_text = self._validate_text(new_text)

        self.store.update(self.comment_path(comment_id), {
            "text": new_text,
            "edited": True,
            "edited_at": SERVER_TIMESTAMP,
        })

        edited = replace(comment, text=new_text, edited=True, edited_at=utcnow())
        with self._lock:
            self._update(comments=tuple(
                replace(c, text=new_text, edited=True, edited_at=edited.edited_at)
                if c.id == comment_id else c
                for c in self._state.comments
            ))
        return edited

    def delete_comment(self, comment_id: str):
        """Delete a comment and decrement the video's comment_count in one batch."""
        self._require_author(comment_id)

        batch = self.store.batch()
        batch.delete(self.comment_path(comment_id))
        batch.update(self.video_path, {"comment_count": Increment(-1)})
        batch.commit()

        logger.info(f"Deleted comment {comment_id} on {self.video_id}")
        with self._lock:
            self._update(comments=tuple(c for c in self._state.comments if c.id != comment_id))

    def toggle_like(self, comment_id: str) -> bool:
        """Like or unlike a comment for the signed-in user. Returns the new liked state.

        The per-user membership document is the liked flag; like_count changes
        in the same transaction.
        """
        user_id = self.session.require_user()
        like_path = self.like_path(comment_id, user_id)
        comment_path = self.comment_path(comment_id)

        def apply(txn):
            comment = txn.get(comment_path)
            if comment is None:
                raise ValidationError(f"No comment {comment_id} on video {self.video_id}")
            current = comment.get("like_count", 0)
            if txn.get(like_path) is not None:
                txn.delete(like_path)
                txn.update(comment_path, {"like_count": Increment(-1)})
                return False, current - 1
            txn.set(like_path, {"user_id": user_id, "liked_at": SERVER_TIMESTAMP})
            txn.update(comment_path, {"like_count": Increment(1)})
            return True, current + 1

        liked, like_count = self.store.run_transaction(apply)

        with self._lock:
            self._update(comments=tuple(
                replace(c, like_count=like_count) if c.id == comment_id else c
                for c in self._state.comments
            ))
        return liked

    def is_liked(self, comment_id: str) -> bool:
        user_id = self.session.require_user()
        return self.store.get(self.like_path(comment_id, user_id)) is not None
