# access.py
"""Access rules for course cards and videos.

Pure functions over plain values; they never touch the database. Callers pass
whatever they already hold: ORM rows, projected views or anything else exposing
``id``/``is_free`` on the card, ``max_plays`` on the video and ``plays_used`` on
the progress record. A missing progress record counts as zero plays.
"""
from dataclasses import dataclass
from typing import AbstractSet, Any, Optional


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str = ""
    plays_used: int = 0
    plays_left: int = 0


def plays_used_of(progress: Optional[Any]) -> int:
    if progress is None:
        return 0
    return int(getattr(progress, "plays_used", 0) or 0)


def is_card_unlocked(card: Any, completed_purchases: AbstractSet[str]) -> bool:
    return bool(card.is_free) or card.id in completed_purchases


def can_play(video: Any, progress: Optional[Any]) -> bool:
    return plays_used_of(progress) < video.max_plays


def is_video_accessible(
    video: Any, card: Any, progress: Optional[Any], completed_purchases: AbstractSet[str]
) -> bool:
    return is_card_unlocked(card, completed_purchases) and can_play(video, progress)


def evaluate(
    video: Any, card: Any, progress: Optional[Any], completed_purchases: AbstractSet[str]
) -> AccessDecision:
    """Same answer as ``is_video_accessible`` with the reason spelled out."""
    used = plays_used_of(progress)
    left = max(video.max_plays - used, 0)
    if not is_card_unlocked(card, completed_purchases):
        return AccessDecision(False, "card_locked", used, left)
    if not can_play(video, progress):
        return AccessDecision(False, "no_plays_remaining", used, 0)
    return AccessDecision(True, "", used, left)
