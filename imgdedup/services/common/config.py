import os
from pydantic import BaseModel, Field
from typing import Optional


class Endpoint(BaseModel):
    url: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: str = "us-east-1"


class SvcOptions(BaseModel):
    limit: int = Field(0, ge=0)
    prefix: str = ""
    suffix: str = "*.jpg"
    src_bucket_name: str
    dst_bucket_name: str

    @property
    def glob(self) -> Optional[str]:
        if not self.prefix:
            return None
        return f"{self.prefix.rstrip('/')}/{self.suffix}"


class DBOptions(BaseModel):
    username: str = ""
    password: str = ""
    connection_string: str = ""
    url: Optional[str] = None

    @property
    def dsn(self) -> str:
        if self.url:
            return self.url
        return f"postgresql+psycopg://{self.username}:{self.password}@{self.connection_string}"


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


DEBUG = _bool("DEBUG")
PROCESS_LIMIT = int(os.getenv("PROCESS_LIMIT", "0"))
API_HOST = os.getenv("API_HOST", "0.0.0.0"); API_PORT = int(os.getenv("API_PORT", "8080"))

SRC_BUCKET = os.getenv("SRC_BUCKET", "src_bucket_name")
DST_BUCKET = os.getenv("DST_BUCKET", "dst_bucket_name")
NAME_PREFIX = os.getenv("NAME_PREFIX", "")
NAME_GLOB_SUFFIX = os.getenv("NAME_GLOB_SUFFIX", "*.jpg")

DB_URL = os.getenv("DB_URL") or None
DB_USERNAME = os.getenv("DB_USERNAME", "database_username")
DB_PASSWORD = os.getenv("DB_PASSWORD", "database_password")
DB_CONNECTION_STRING = os.getenv("DB_CONNECTION_STRING", "database_connection_string")
DB_MAX_RETRIES = int(os.getenv("DB_MAX_RETRIES", "10"))
DB_RETRY_BASE_DELAY_S = float(os.getenv("DB_RETRY_BASE_DELAY_S", "0.05"))

S3_ENDPOINT = Endpoint(
    url=os.getenv("S3_ENDPOINT_URL") or None,
    access_key=os.getenv("S3_ACCESS_KEY") or None,
    secret_key=os.getenv("S3_SECRET_KEY") or None,
    region=os.getenv("S3_REGION", "us-east-1"),
)
LISTING_PAGE_SIZE = int(os.getenv("LISTING_PAGE_SIZE", "1000"))
LISTING_MAX_PAGE_FAILURES = int(os.getenv("LISTING_MAX_PAGE_FAILURES", "5"))
LISTING_RETRY_BASE_DELAY_S = float(os.getenv("LISTING_RETRY_BASE_DELAY_S", "0.5"))
COPY_CONFLICT_RETRIES = int(os.getenv("COPY_CONFLICT_RETRIES", "3"))
