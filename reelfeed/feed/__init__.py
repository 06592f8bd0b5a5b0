from __future__ import annotations

from .synchronizer import FeedSynchronizer, decode_videos
from .engagement import estimate_engagement_score

__all__ = [
    "FeedSynchronizer",
    "decode_videos",
    "estimate_engagement_score",
]
