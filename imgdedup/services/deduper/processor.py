from __future__ import annotations

import logging
from enum import Enum

from ..observability.metrics import objects_processed_total
from .copier import ConditionalCopier
from .errors import CopyFailed, IndexUnavailable
from .index import FingerprintIndex, ObjectRecord
from .source import ObjectDescriptor

log = logging.getLogger("deduper-processor")


class Outcome(str, Enum):
    COPY = "copy"
    SKIP = "skip"
    ERROR = "error"


def _record(status: str, operation: str) -> None:
    objects_processed_total.labels(status=status, operation=operation).inc()


class Deduper:
    """
    Per-object pipeline: count the fingerprint, record the object, copy it if
    the fingerprint had not been seen.

    The count is taken before the insert so a re-processed object finds its
    own earlier row and is never classified as new twice. The destination
    precondition in the copier remains the guard against double copies when
    two processes see the same fingerprint at once.
    """

    def __init__(self, index: FingerprintIndex, copier: ConditionalCopier):
        self.index = index
        self.copier = copier

    def process_one(self, d: ObjectDescriptor) -> Outcome:
        rec = ObjectRecord.from_descriptor(d)
        operation = Outcome.SKIP.value

        try:
            count = self.index.count_by_fingerprint(d.fingerprint)
        except IndexUnavailable as e:
            log.error("failed to count existing image name=%s error=%s", d.name, e)
            _record("error", operation)
            return Outcome.ERROR
        log.debug("count section=%s name=%s count=%d crc32=%d", rec.section, d.name, count, d.fingerprint)

        try:
            inserted = self.index.insert(rec)
        except IndexUnavailable as e:
            log.error("failed to insert image name=%s error=%s", d.name, e)
            _record("error", operation)
            return Outcome.ERROR
        log.debug("insert section=%s name=%s inserted=%s crc32=%d", rec.section, d.name, inserted, d.fingerprint)

        outcome = Outcome.SKIP
        if count == 0:
            operation = Outcome.COPY.value
            try:
                copied = self.copier.copy_if_absent(d.name)
            except CopyFailed as e:
                log.error("copy failed section=%s name=%s crc32=%d error=%s", rec.section, d.name, d.fingerprint, e)
                _record("error", operation)
                return Outcome.ERROR
            if copied:
                outcome = Outcome.COPY
            else:
                operation = Outcome.SKIP.value
                log.debug("copy skipped, destination exists name=%s", d.name)

        _record("success", operation)
        log.info("image section=%s name=%s count=%d crc32=%d status=%s", rec.section, d.name, count, d.fingerprint, outcome.value)
        return outcome
