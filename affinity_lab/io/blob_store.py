"""
Key-value blob storage for laboratory results and run status.

Keys are slash-separated relative paths (e.g. "audiences/ds/es/_run/status.json").
LocalBlobStore keeps them under a root directory; S3BlobStore keeps them in a
bucket. Both return None for missing keys instead of raising.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def put_json(self, key: str, data: Dict[str, Any]) -> str:
        ...

    def put_text(self, key: str, content: str) -> str:
        ...

    def list_keys(self, prefix: str) -> List[str]:
        ...


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, default=str)


class LocalBlobStore:
    """
    Filesystem blob store.

    Writes go through a temporary file and a rename so a concurrent reader
    never sees a half-written status record.
    """

    def __init__(self, root: str):
        self.root = Path(root)
        logger.info(f"Using local blob storage at {self.root}")

    def _path(self, key: str) -> Path:
        return self.root / key.lstrip("/")

    def _save_to_local(self, key: str, content: str) -> str:
        full_path = self._path(key)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = full_path.with_name(full_path.name + ".tmp")
            tmp_path.write_text(content, encoding="utf-8")
            tmp_path.replace(full_path)
            logger.debug(f"Saved blob locally: {full_path}")
            return str(full_path)
        except OSError as e:
            logger.error(f"Failed to save blob locally {key}: {e}")
            raise

    def put_json(self, key: str, data: Dict[str, Any]) -> str:
        return self._save_to_local(key, _dumps(data))

    def put_text(self, key: str, content: str) -> str:
        return self._save_to_local(key, content)

    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        full_path = self._path(key)
        if not full_path.exists():
            return None
        try:
            return json.loads(full_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse JSON from {key}: {e}")
            return None

    def list_keys(self, prefix: str) -> List[str]:
        base = self._path(prefix)
        if not base.exists():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in base.rglob("*")
            if p.is_file() and not p.name.endswith(".tmp")
        )


class S3BlobStore:
    """Blob store backed by an S3 bucket (optionally under a key prefix)."""

    def __init__(self, bucket: str, prefix: str = "", client=None):
        import boto3

        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client or boto3.client("s3")

    def _key(self, key: str) -> str:
        key = key.lstrip("/")
        return f"{self.prefix}/{key}" if self.prefix else key

    def _strip(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(self.prefix + "/"):
            return full_key[len(self.prefix) + 1:]
        return full_key

    def _put(self, key: str, content: str, content_type: str) -> str:
        full_key = self._key(key)
        self._client.put_object(
            Bucket=self.bucket,
            Key=full_key,
            Body=content.encode("utf-8"),
            ContentType=content_type,
        )
        return f"s3://{self.bucket}/{full_key}"

    def put_json(self, key: str, data: Dict[str, Any]) -> str:
        return self._put(key, _dumps(data), "application/json")

    def put_text(self, key: str, content: str) -> str:
        content_type = "text/csv" if key.endswith(".csv") else "text/plain"
        return self._put(key, content, content_type)

    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code")
            if error_code in {"404", "NoSuchKey", "NotFound"}:
                return None
            raise
        body = response["Body"].read().decode("utf-8")
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse JSON from s3://{self.bucket}/{self._key(key)}: {e}")
            return None

    def list_keys(self, prefix: str) -> List[str]:
        full_prefix = self._key(prefix).rstrip("/") + "/"
        paginator = self._client.get_paginator("list_objects_v2")
        keys: List[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
            for item in page.get("Contents", []):
                keys.append(self._strip(item["Key"]))
        return sorted(keys)


def build_blob_store(blob_root: str, bucket: Optional[str] = None) -> BlobStore:
    """S3 when a bucket is configured, otherwise the local filesystem."""
    if bucket:
        return S3BlobStore(bucket)
    return LocalBlobStore(blob_root)
