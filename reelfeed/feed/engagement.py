"""Local engagement estimate for diagnostics.

The persisted engagement_score is computed by the backend analytics job and
is the only value the feed orders by. This estimate exists so the app can
show how a video is trending before the backend has scored it."""

from __future__ import annotations

import math
from typing import Optional

from ..models import VideoRecord

WATCH_TIME_WEIGHT = 0.35
COMPLETION_WEIGHT = 0.30
LIKES_WEIGHT = 0.20
REWATCH_WEIGHT = 0.15


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def normalized_likes(like_count: int, view_count: int) -> float:
    """Like rate damped by log-scaled reach so a 2/2 video doesn't beat 900/1000."""
    if view_count <= 0:
        return 0.0
    rate = like_count / view_count
    reach = math.log10(view_count + 1) / (math.log10(view_count + 1) + 1)
    return _clamp(rate * reach)


def estimate_engagement_score(record: VideoRecord, duration_seconds: Optional[float] = None) -> float:
    """Weighted 0..1 blend of watch-time ratio, completion, likes and rewatch rate."""
    if duration_seconds and duration_seconds > 0:
        watch_ratio = _clamp(record.average_watch_time / duration_seconds)
    else:
        watch_ratio = _clamp(record.completion_rate)

    score = (
        WATCH_TIME_WEIGHT * watch_ratio
        + COMPLETION_WEIGHT * _clamp(record.completion_rate)
        + LIKES_WEIGHT * normalized_likes(record.like_count, record.view_count)
        + REWATCH_WEIGHT * _clamp(record.rewatch_rate)
    )
    return round(score, 4)
