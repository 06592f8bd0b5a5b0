from __future__ import annotations

from .thread import CommentThread

__all__ = ["CommentThread"]
