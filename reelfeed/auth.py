"""Signed-in session and user profile documents.

Credential checks happen in the external identity provider; AuthSession only
tracks which user id is currently acting and tells observers when that
changes."""

from __future__ import annotations

import logging
import re
from typing import Optional

from .errors import AuthError, ValidationError
from .models import UserProfile, _parse_datetime, utcnow
from .observable import Observable
from .store.document_store import SERVER_TIMESTAMP, DocumentStore

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthSession(Observable):
    """Holds the signed-in user id. Observers receive the id (or None)."""

    def __init__(self, user_id: Optional[str] = None):
        super().__init__(user_id)

    @property
    def current_user_id(self) -> Optional[str]:
        return self.snapshot()

    @property
    def is_authenticated(self) -> bool:
        return self.current_user_id is not None

    def sign_in(self, user_id: str):
        if not user_id or not user_id.strip():
            raise ValidationError("User id must not be empty")
        logger.info(f"User signed in: {user_id}")
        self._set_state(user_id)

    def sign_out(self):
        if self.current_user_id is not None:
            logger.info(f"User signed out: {self.current_user_id}")
        self._set_state(None)

    def require_user(self) -> str:
        """Return the signed-in user id or raise AuthError."""
        user_id = self.current_user_id
        if user_id is None:
            raise AuthError("User not signed in")
        return user_id


class ProfileService:
    """Reads and writes users/{user_id} profile documents."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def create_profile(self, user_id: str, username: str, email: str) -> None:
        username = (username or "").strip()
        email = (email or "").strip()
        if not user_id or not username or not email:
            raise ValidationError("Please fill in all fields")
        if not EMAIL_RE.match(email):
            raise ValidationError("Please enter a valid email address")

        path = f"users/{user_id}"
        if self.store.get(path) is not None:
            logger.warning(f"Profile already exists for {user_id}, overwriting")
        self.store.set(path, {
            "username": username,
            "email": email,
            "role": "user",
            "registered_at": SERVER_TIMESTAMP,
        })
        logger.info(f"Created profile for {user_id}")

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        doc = self.store.get(f"users/{user_id}")
        if doc is None:
            return None
        return UserProfile(
            user_id=user_id,
            username=doc.get("username") or "Unknown",
            email=doc.get("email") or "No email",
            bio=doc.get("bio"),
            role=doc.get("role") or "user",
            registered_at=_parse_datetime(doc.get("registered_at")) or utcnow(),
        )

    def display_name(self, user_id: str) -> str:
        """Best-effort display name; never raises for missing or unreadable profiles."""
        try:
            doc = self.store.get(f"users/{user_id}")
        except Exception as e:
            logger.error(f"Error fetching display name for {user_id}: {e}")
            return UNKNOWN_USER
        if doc is None:
            return UNKNOWN_USER
        return doc.get("display_name") or doc.get("username") or UNKNOWN_USER
