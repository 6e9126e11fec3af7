from typing import Dict, Optional
import boto3, botocore
from .config import Endpoint, S3_ENDPOINT

_clients: Dict[Optional[str], object] = {}


def client_for(ep: Endpoint = S3_ENDPOINT):
    if ep.url in _clients: return _clients[ep.url]
    c = boto3.client("s3",
        aws_access_key_id=ep.access_key, aws_secret_access_key=ep.secret_key,
        endpoint_url=ep.url, config=botocore.client.Config(signature_version="s3v4"),
        region_name=ep.region)
    _clients[ep.url]=c; return c
