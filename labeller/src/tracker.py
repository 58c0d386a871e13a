from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from labeller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class CompletionTracker:
    """Process-wide record of which kinds have been found fully labelled.

    Each kind reports through its own :class:`KindCompletion`.  A kind stays
    complete once reported; the process is expected to exit and start over
    once every tracked kind has reported.
    """

    def __init__(self, kinds: Iterable[str]) -> None:
        self._kinds = frozenset(kinds)
        if not self._kinds:
            raise ValueError("CompletionTracker needs at least one kind to track")
        self._complete: set[str] = set()
        self._lock = threading.Lock()
        METRICS.kinds_complete.set(0)

    @property
    def kinds(self) -> frozenset[str]:
        return self._kinds

    def report_complete(self, kind: str) -> bool:
        """Record *kind* as fully labelled and return whether all kinds are."""
        if kind not in self._kinds:
            raise KeyError(f"kind {kind!r} is not tracked")
        with self._lock:
            if kind not in self._complete:
                self._complete.add(kind)
                METRICS.kinds_complete.set(len(self._complete))
                LOGGER.info(
                    "All eligible %s are labelled (%d/%d kinds complete)",
                    kind,
                    len(self._complete),
                    len(self._kinds),
                )
            return self._complete == self._kinds

    def is_complete(self, kind: str) -> bool:
        with self._lock:
            return kind in self._complete

    def arbiter(self, kind: str) -> KindCompletion:
        if kind not in self._kinds:
            raise KeyError(f"kind {kind!r} is not tracked")
        return KindCompletion(tracker=self, kind=kind)


class KindCompletion:
    """Completion arbiter bound to a single kind of a :class:`CompletionTracker`."""

    def __init__(self, tracker: CompletionTracker, kind: str) -> None:
        self.tracker = tracker
        self.kind = kind

    def all_complete(self) -> bool:
        return self.tracker.report_complete(self.kind)
