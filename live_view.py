# live_view.py
"""Per-user read model of the catalog.

``project`` is a pure function of four snapshots (subjects, cards with videos,
the user's progress rows and the user's completed purchase ids). The projector
keeps the latest of each, fed by ``CatalogProvider`` subscriptions, and rebuilds
the whole view from scratch whenever any of them changes. Nothing here writes
to the store, and play counts are only ever copied onto the projected
``VideoView``, never onto the shared video record.
"""
import logging
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable, Optional

from access import is_card_unlocked
from catalog import CardView, CatalogProvider, ProgressView, SubjectView, VideoView

logger = logging.getLogger("lms.live_view")


@dataclass(frozen=True)
class LiveView:
    subjects: tuple[SubjectView, ...] = field(default_factory=tuple)
    cards: tuple[CardView, ...] = field(default_factory=tuple)
    purchased: frozenset = frozenset()


def project(
    subjects: Iterable[SubjectView],
    cards: Iterable[CardView],
    progress: Iterable[ProgressView],
    purchased: Iterable[str],
) -> LiveView:
    purchased = frozenset(purchased)
    plays = {p.video_id: p.plays_used for p in progress}
    enriched = tuple(
        replace(
            card,
            is_purchased=is_card_unlocked(card, purchased),
            videos=tuple(replace(v, plays_used=plays.get(v.id, 0)) for v in card.videos),
        )
        for card in cards
    )
    return LiveView(subjects=tuple(subjects), cards=enriched, purchased=purchased)


def cards_by_subject(view: LiveView, subject_id: str) -> list[CardView]:
    return [c for c in view.cards if c.subject_id == subject_id]


def find_card(view: LiveView, card_id: str) -> Optional[CardView]:
    return next((c for c in view.cards if c.id == card_id), None)


def video_with_progress(view: LiveView, video_id: str) -> Optional[VideoView]:
    for card in view.cards:
        for video in card.videos:
            if video.id == video_id:
                return video
    return None


def current_month_card(cards: Iterable[CardView], now: Optional[datetime] = None) -> Optional[CardView]:
    """First card named after the current month and year, e.g. "March 2025"."""
    now = now or datetime.now()
    month = now.strftime("%B").lower()
    year = str(now.year)
    for card in cards:
        if month in card.name.lower() and year in card.name:
            return card
    return None


def view_payload(view: LiveView) -> dict:
    return {
        "subjects": [asdict(s) for s in view.subjects],
        "cards": [asdict(c) for c in view.cards],
        "purchased": sorted(view.purchased),
    }


class LiveViewProjector:
    """Keeps ``view`` current for one user (or an anonymous visitor).

    ``start()`` opens the subscriptions and ``close()`` tears them all down,
    once. ``on_change`` receives every rebuilt view.
    """

    def __init__(
        self,
        provider: CatalogProvider,
        user_id: Optional[str] = None,
        on_change: Optional[Callable[[LiveView], None]] = None,
    ) -> None:
        self.provider = provider
        self.user_id = user_id
        self.on_change = on_change
        self.view = LiveView()
        self._subjects: list[SubjectView] = []
        self._cards: list[CardView] = []
        self._progress: list[ProgressView] = []
        self._purchased: frozenset = frozenset()
        self._subscriptions = []
        self._lock = threading.RLock()
        self._starting = False
        self.started = False
        self.closed = False

    # --- snapshot sinks ---
    def _set_subjects(self, subjects):
        with self._lock:
            self._subjects = list(subjects)
            self._rederive()

    def _set_cards(self, cards):
        with self._lock:
            self._cards = list(cards)
            self._rederive()

    def _set_progress(self, progress):
        with self._lock:
            self._progress = list(progress)
            self._rederive()

    def _set_purchased(self, purchased):
        with self._lock:
            self._purchased = frozenset(purchased)
            self._rederive()

    def _rederive(self) -> None:
        if self._starting or self.closed:
            return
        self.view = project(self._subjects, self._cards, self._progress, self._purchased)
        if self.on_change is not None:
            self.on_change(self.view)

    def start(self) -> "LiveViewProjector":
        # subscribing happens outside self._lock: deliveries take their
        # subscription lock first and this lock second, never the reverse
        with self._lock:
            if self.started or self._starting:
                return self
            self._starting = True
        subs = []
        try:
            subs.append(self.provider.subscribe_subjects(self._set_subjects))
            subs.append(self.provider.subscribe_course_cards(self._set_cards))
            if self.user_id:
                subs.append(self.provider.subscribe_progress(self.user_id, self._set_progress))
                subs.append(self.provider.subscribe_purchases(self.user_id, self._set_purchased))
        except Exception:
            for sub in subs:
                sub.close()
            with self._lock:
                self._starting = False
            raise
        with self._lock:
            self._starting = False
            if not self.closed:
                self._subscriptions.extend(subs)
                subs = []
                self.started = True
                self._rederive()
        # closed while subscribing
        for sub in subs:
            sub.close()
        logger.debug("live_view.started user=%s", self.user_id)
        return self

    def mark_purchased(self, card_id: str) -> None:
        """Display hint after a completed checkout; the next purchases tick replaces it."""
        with self._lock:
            self._purchased = self._purchased | {card_id}
            self._rederive()

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            sub.close()
        logger.debug("live_view.closed user=%s", self.user_id)

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.close()
