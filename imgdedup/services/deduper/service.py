from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from ..observability.metrics import listing_errors_total
from .errors import ListingError
from .index import FingerprintIndex
from .processor import Deduper, Outcome
from .source import ObjectSource

log = logging.getLogger("deduper-service")


class State(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class RunSummary:
    attempted: int = 0
    copied: int = 0
    skipped: int = 0
    errors: int = 0
    listing_errors: int = 0
    listing_incomplete: bool = False

    def add(self, outcome: Outcome) -> None:
        if outcome is Outcome.COPY:
            self.copied += 1
        elif outcome is Outcome.SKIP:
            self.skipped += 1
        else:
            self.errors += 1


class ImgDeduper:
    """
    Drives the dedup loop over a bucket listing.

    The controller goes STOPPED -> RUNNING -> STOPPED exactly once. ``stop()``
    is cooperative: the loop notices it before fetching the next object.
    """

    def __init__(self, index: FingerprintIndex, source: ObjectSource, deduper: Deduper, limit: int = 0):
        self.index = index
        self.source = source
        self.deduper = deduper
        self.limit = limit
        self._running = threading.Event()
        self._started = False
        self._stop_requested = False
        self._lock = threading.Lock()

    @property
    def state(self) -> State:
        return State.RUNNING if self._running.is_set() else State.STOPPED

    def is_ready(self) -> bool:
        return self._running.is_set()

    def stop(self) -> None:
        log.info("stopping service")
        with self._lock:
            self._stop_requested = True
            self._running.clear()

    def start(self) -> RunSummary:
        with self._lock:
            if self._started:
                raise RuntimeError("service already ran, create a new instance")
            self._started = True
        log.info("service started src=%s glob=%s", self.source.bucket, self.source.pattern)

        # IndexUnavailable here is fatal, the service never becomes ready
        self.index.ensure_schema()

        summary = RunSummary()
        with self._lock:
            # a stop that arrived during startup still wins
            if self._stop_requested:
                log.info("stop requested before processing began")
                return summary
            self._running.set()
        log.info("service ready limit=%d glob=%s", self.limit, self.source.pattern)
        try:
            while self._running.is_set():
                if self.limit and summary.attempted >= self.limit:
                    log.info("limit reached limit=%d", self.limit)
                    break
                try:
                    d = self.source.next()
                except ListingError as e:
                    # a failed fetch still counts against the limit
                    summary.attempted += 1
                    summary.listing_errors += 1
                    listing_errors_total.inc()
                    log.error("failed to get next bucket object name=%s error=%s", e.name, e)
                    continue
                if d is None:
                    log.info("bucket listing exhausted")
                    break
                summary.attempted += 1
                summary.add(self.deduper.process_one(d))
        finally:
            self._running.clear()
        summary.listing_incomplete = self.source.incomplete
        log.info(
            "service process completed attempted=%d copied=%d skipped=%d errors=%d listing_errors=%d listing_incomplete=%s",
            summary.attempted, summary.copied, summary.skipped, summary.errors, summary.listing_errors,
            summary.listing_incomplete,
        )
        return summary
