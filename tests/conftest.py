"""Shared fixtures: an in-memory S3 double and a SQLite-backed index."""

from __future__ import annotations

import base64
import io
import zlib
from collections import defaultdict
from dataclasses import dataclass

import pytest
from botocore.exceptions import ClientError
from prometheus_client import REGISTRY
from sqlalchemy.pool import StaticPool

from imgdedup.services.common.db import ImageRecord, make_session_factory
from imgdedup.services.deduper import source as source_module
from imgdedup.services.deduper.copier import ConditionalCopier
from imgdedup.services.deduper.index import FingerprintIndex
from imgdedup.services.deduper.processor import Deduper
from imgdedup.services.deduper.service import ImgDeduper
from imgdedup.services.deduper.source import ObjectSource

SRC = "src-bucket"
DST = "dst-bucket"


def client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


@dataclass
class _Obj:
    body: bytes
    crc: int
    stored_checksum: bool = True
    raw_checksum: str | None = None


class FakeS3:
    """Enough of the boto3 S3 client surface for listing, describing and copying."""

    def __init__(self) -> None:
        self.buckets: dict[str, dict[str, _Obj]] = defaultdict(dict)
        self.list_failures = 0
        self.head_failures: set[str] = set()
        self.copy_errors: dict[str, list[tuple[str, int]]] = {}
        self.list_calls: list[dict] = []
        self.copy_calls: list[str] = []
        self.get_calls: list[str] = []

    def put(
        self,
        bucket: str,
        key: str,
        body: bytes | None = None,
        crc: int | None = None,
        stored_checksum: bool = True,
        raw_checksum: str | None = None,
    ):
        if body is None:
            body = key.encode()
        if crc is None:
            crc = zlib.crc32(body) & 0xFFFFFFFF
        self.buckets[bucket][key] = _Obj(body=body, crc=crc, stored_checksum=stored_checksum, raw_checksum=raw_checksum)

    def keys(self, bucket: str) -> set[str]:
        return set(self.buckets[bucket])

    def list_objects_v2(self, Bucket, MaxKeys=1000, Prefix="", ContinuationToken=None):
        self.list_calls.append({"Prefix": Prefix, "ContinuationToken": ContinuationToken})
        if self.list_failures:
            self.list_failures -= 1
            raise client_error("InternalError", 500, "ListObjectsV2")
        keys = sorted(k for k in self.buckets[Bucket] if k.startswith(Prefix))
        start = int(ContinuationToken or 0)
        chunk = keys[start:start + MaxKeys]
        truncated = start + MaxKeys < len(keys)
        out = {"KeyCount": len(chunk), "IsTruncated": truncated}
        if chunk:
            out["Contents"] = [{"Key": k, "Size": len(self.buckets[Bucket][k].body)} for k in chunk]
        if truncated:
            out["NextContinuationToken"] = str(start + MaxKeys)
        return out

    def head_object(self, Bucket, Key, ChecksumMode=None):
        if Key in self.head_failures:
            raise client_error("AccessDenied", 403, "HeadObject")
        obj = self.buckets[Bucket].get(Key)
        if obj is None:
            raise client_error("404", 404, "HeadObject")
        r = {"ContentLength": len(obj.body), "ETag": '"etag"'}
        if obj.stored_checksum and ChecksumMode == "ENABLED":
            r["ChecksumCRC32"] = obj.raw_checksum or base64.b64encode(obj.crc.to_bytes(4, "big")).decode()
            r["ChecksumType"] = "FULL_OBJECT"
        return r

    def get_object(self, Bucket, Key):
        self.get_calls.append(Key)
        return {"Body": io.BytesIO(self.buckets[Bucket][Key].body)}

    def copy_object(self, Bucket, Key, CopySource, IfNoneMatch=None):
        self.copy_calls.append(Key)
        errors = self.copy_errors.get(Key)
        if errors:
            code, status = errors.pop(0)
            raise client_error(code, status, "CopyObject")
        if IfNoneMatch == "*" and Key in self.buckets[Bucket]:
            raise client_error("PreconditionFailed", 412, "CopyObject")
        self.buckets[Bucket][Key] = self.buckets[CopySource["Bucket"]][CopySource["Key"]]
        return {"CopyObjectResult": {"ETag": '"etag"'}}


def stored_record(session_factory, name: str) -> ImageRecord | None:
    with session_factory() as s:
        return s.get(ImageRecord, name)


def processed(status: str, operation: str) -> float:
    return REGISTRY.get_sample_value(
        "meta_objects_processed_total", {"status": status, "operation": operation}
    ) or 0.0


@pytest.fixture
def s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def session_factory():
    factory = make_session_factory(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture(autouse=True)
def listing_sleeps(monkeypatch) -> list[float]:
    """Backoff delays requested by the listing, recorded instead of slept."""
    delays: list[float] = []
    monkeypatch.setattr(source_module.time, "sleep", delays.append)
    return delays


@pytest.fixture
def index(session_factory) -> FingerprintIndex:
    idx = FingerprintIndex(session_factory, max_retries=3)
    idx.ensure_schema()
    return idx


@pytest.fixture
def copier(s3) -> ConditionalCopier:
    return ConditionalCopier(s3, SRC, DST)


@pytest.fixture
def deduper(index, copier) -> Deduper:
    return Deduper(index, copier)


@pytest.fixture
def make_service(s3, session_factory):
    """Build a fresh controller per call, sharing the bucket double and database."""

    def _make(limit: int = 0, pattern: str | None = None, page_size: int = 1000) -> ImgDeduper:
        idx = FingerprintIndex(session_factory, max_retries=3)
        source = ObjectSource(s3, SRC, pattern=pattern, page_size=page_size)
        copier = ConditionalCopier(s3, SRC, DST)
        return ImgDeduper(idx, source, Deduper(idx, copier), limit=limit)

    return _make
