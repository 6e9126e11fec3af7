from __future__ import annotations

import base64
import binascii
import logging
import re
import time
import zlib
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..common.config import LISTING_MAX_PAGE_FAILURES, LISTING_PAGE_SIZE, LISTING_RETRY_BASE_DELAY_S
from .errors import ListingError

log = logging.getLogger("deduper-source")

_WILDCARDS = "*?[{"
_CHUNK = 1024 * 1024
_MAX_RETRY_DELAY_S = 30.0


@dataclass(frozen=True)
class ObjectDescriptor:
    name: str
    size: int
    fingerprint: int


def glob_prefix(pattern: str) -> str:
    """Literal text before the first wildcard, usable as a server-side listing prefix."""
    for i, ch in enumerate(pattern):
        if ch in _WILDCARDS:
            return pattern[:i]
    return pattern


def compile_glob(pattern: str) -> re.Pattern:
    """
    Translate a bucket glob into a regex.

    ``*`` and ``?`` stay inside one path segment, ``**`` crosses segments and
    ``**/`` also matches no segment at all. ``[...]`` (``[!...]`` negated) and
    ``{a,b}`` alternation are supported.
    """
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?"); i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*"); i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:j].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]"); i = j + 1
                continue
        elif c == "{":
            j = pattern.find("}", i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                alts = pattern[i + 1:j].split(",")
                out.append("(?:" + "|".join(re.escape(a) for a in alts) + ")"); i = j + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out))


def _decode_crc32(value: Optional[str]) -> Optional[int]:
    # composite multipart checksums look like "<b64>-<parts>"
    if not value or "-" in value:
        return None
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        log.warning("ignoring malformed stored crc32 value=%r", value)
        return None
    if len(raw) != 4:
        return None
    return int.from_bytes(raw, "big")


def crc32_stream(stream, chunk=_CHUNK) -> int:
    crc = 0
    while True:
        b = stream.read(chunk)
        if not b: break
        crc = zlib.crc32(b, crc)
    return crc & 0xFFFFFFFF


class ObjectSource:
    """
    Lazy, forward-only listing of a bucket.

    ``next()`` returns the next :class:`ObjectDescriptor` or ``None`` once the
    listing is exhausted. Failures raise :class:`ListingError` for that call
    only: a failed page is fetched again on the following call, a failed object
    is dropped.
    """

    def __init__(
        self,
        client,
        bucket: str,
        pattern: Optional[str] = None,
        page_size: int = LISTING_PAGE_SIZE,
        max_page_failures: int = LISTING_MAX_PAGE_FAILURES,
        retry_base_delay: float = LISTING_RETRY_BASE_DELAY_S,
    ):
        self.client = client
        self.bucket = bucket
        self.pattern = pattern
        self.page_size = page_size
        self.max_page_failures = max_page_failures
        self.retry_base_delay = retry_base_delay
        self._prefix = glob_prefix(pattern) if pattern else ""
        self._match = compile_glob(pattern) if pattern else None
        self._pending: Deque[dict] = deque()
        self._token: Optional[str] = None
        self._exhausted = False
        self._page_failures = 0
        self._gave_up = False

    @property
    def incomplete(self) -> bool:
        """True when the listing was abandoned before the last page."""
        return self._gave_up

    def _fetch_page(self) -> None:
        kwargs = {"Bucket": self.bucket, "MaxKeys": self.page_size}
        if self._prefix:
            kwargs["Prefix"] = self._prefix
        if self._token:
            kwargs["ContinuationToken"] = self._token
        if self._page_failures:
            time.sleep(min(_MAX_RETRY_DELAY_S, self.retry_base_delay * 2 ** (self._page_failures - 1)))
        try:
            page = self.client.list_objects_v2(**kwargs)
        except (ClientError, BotoCoreError) as e:
            self._page_failures += 1
            if self._page_failures >= self.max_page_failures:
                log.error(
                    "giving up listing bucket=%s after %d failed attempts, remaining objects are not processed",
                    self.bucket, self._page_failures,
                )
                self._exhausted = True
                self._gave_up = True
            raise ListingError(f"list {self.bucket}: {e}") from e
        self._page_failures = 0
        for entry in page.get("Contents", []):
            key = entry["Key"]
            if key.endswith("/"):
                continue
            if self._match is not None and not self._match.fullmatch(key):
                continue
            self._pending.append(entry)
        if page.get("IsTruncated") and page.get("NextContinuationToken"):
            self._token = page["NextContinuationToken"]
        else:
            self._exhausted = True

    def fingerprint(self, key: str) -> int:
        r = self.client.head_object(Bucket=self.bucket, Key=key, ChecksumMode="ENABLED")
        crc = None
        if r.get("ChecksumType", "FULL_OBJECT") == "FULL_OBJECT":
            crc = _decode_crc32(r.get("ChecksumCRC32"))
        if crc is not None:
            return crc
        log.debug("no stored crc32, hashing object body name=%s", key)
        body = self.client.get_object(Bucket=self.bucket, Key=key)["Body"]
        try:
            return crc32_stream(body)
        finally:
            body.close()

    def next(self) -> Optional[ObjectDescriptor]:
        while not self._pending:
            if self._exhausted:
                return None
            self._fetch_page()
        entry = self._pending.popleft()
        key = entry["Key"]
        try:
            fp = self.fingerprint(key)
        except (ClientError, BotoCoreError) as e:
            raise ListingError(f"describe {key}: {e}", name=key) from e
        return ObjectDescriptor(name=key, size=int(entry.get("Size", 0)), fingerprint=fp)
