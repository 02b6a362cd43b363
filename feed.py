# feed.py
import logging
import threading
from collections import defaultdict
from typing import Callable

logger = logging.getLogger("lms.feed")

SUBJECTS = "subjects"
COURSE_CARDS = "course_cards"


def progress_topic(user_id: str) -> str:
    return f"progress:{user_id}"


def purchases_topic(user_id: str) -> str:
    return f"purchases:{user_id}"


class Subscription:
    """Handle returned by ``ChangeFeed.subscribe``; ``close()`` detaches it once."""

    def __init__(self, feed: "ChangeFeed", topic: str, callback: Callable[[], None]) -> None:
        self.feed = feed
        self.topic = topic
        self.callback = callback
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.feed._detach(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ChangeFeed:
    """Topic fan-out for committed writes.

    Writers call ``publish(topic)`` after their transaction commits; every live
    subscription on the topic is invoked synchronously with no arguments and is
    expected to re-read whatever snapshot it needs.
    """

    def __init__(self) -> None:
        self._subs: dict[str, list[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Callable[[], None]) -> Subscription:
        sub = Subscription(self, topic, callback)
        with self._lock:
            self._subs[topic].append(sub)
        return sub

    def _detach(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.topic, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subs.get(topic, []))

    def publish(self, *topics: str) -> None:
        for topic in topics:
            with self._lock:
                subs = list(self._subs.get(topic, []))
            for sub in subs:
                if sub.closed:
                    continue
                try:
                    sub.callback()
                except Exception:
                    # one broken listener must not stop the others
                    logger.exception("feed.callback.failed topic=%s", topic)


feed = ChangeFeed()
