"""
Blob storage for listing images: S3-compatible buckets and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
from botocore.config import Config

# S3 presigned URLs cannot outlive seven days.
MAX_PRESIGN_SECONDS = 7 * 24 * 3600


class BlobStore(Protocol):
    """Stores a blob and returns the URL that records keep as a plain string."""

    def put(
        self, data: bytes, path: str, content_type: str = "application/octet-stream"
    ) -> str:
        ...

    def get_bytes(self, path: str) -> bytes:
        ...


@dataclass
class InMemoryBlobStore:
    """Test double for blob storage."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = field(default_factory=dict)

    def put(
        self, data: bytes, path: str, content_type: str = "application/octet-stream"
    ) -> str:
        self.stored_objects[path] = (bytes(data), content_type)
        return f"{self.base_url}/{path}"

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored[0]


@dataclass
class S3BlobStore:
    """
    S3-compatible blob store.

    URLs point at `public_base_url` when the bucket is served publicly,
    otherwise they are presigned GET links.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def url_for(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{path}"
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=MAX_PRESIGN_SECONDS,
        )

    def put(
        self, data: bytes, path: str, content_type: str = "application/octet-stream"
    ) -> str:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
        )
        return self.url_for(path)

    def get_bytes(self, path: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=path)
        return response["Body"].read()
