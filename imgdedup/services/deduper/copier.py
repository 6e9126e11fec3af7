from __future__ import annotations

import logging
import time
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..common.config import COPY_CONFLICT_RETRIES
from .errors import CopyFailed, CopyPreconditionFailed

log = logging.getLogger("deduper-copier")

_PRECONDITION_CODES = ("PreconditionFailed", "412")
_CONFLICT_CODES = ("ConditionalRequestConflict", "409")


def _error_code(e: ClientError) -> str:
    code = e.response.get("Error", {}).get("Code")
    if code:
        return str(code)
    return str(e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))


class ConditionalCopier:
    """Server-side copy into the destination bucket, only when the destination name is still free."""

    def __init__(self, client, src_bucket: str, dst_bucket: str, conflict_retries: int = COPY_CONFLICT_RETRIES):
        self.client = client
        self.src_bucket = src_bucket
        self.dst_bucket = dst_bucket
        self.conflict_retries = conflict_retries

    def _copy(self, src_name: str, dst_name: str) -> None:
        try:
            self.client.copy_object(
                Bucket=self.dst_bucket,
                Key=dst_name,
                CopySource={"Bucket": self.src_bucket, "Key": src_name},
                IfNoneMatch="*",
            )
        except ClientError as e:
            code = _error_code(e)
            if code in _PRECONDITION_CODES:
                raise CopyPreconditionFailed(dst_name) from e
            raise CopyFailed(f"copy {src_name}: {e}", name=src_name, code=code) from e
        except BotoCoreError as e:
            raise CopyFailed(f"copy {src_name}: {e}", name=src_name) from e

    def copy_if_absent(self, src_name: str, dst_name: Optional[str] = None) -> bool:
        """
        Copy ``src_name`` to ``dst_name`` (same name by default).

        Returns True when the object was written and False when the destination
        already held an object of that name. Other failures raise CopyFailed.
        """
        dst_name = dst_name or src_name
        attempt = 0
        while True:
            attempt += 1
            try:
                self._copy(src_name, dst_name)
                return True
            except CopyPreconditionFailed:
                log.debug("destination exists name=%s", dst_name)
                return False
            except CopyFailed as e:
                if e.code not in _CONFLICT_CODES or attempt > self.conflict_retries:
                    raise
                log.debug("concurrent write on name=%s attempt=%d", dst_name, attempt)
            time.sleep(0.1 * attempt)
