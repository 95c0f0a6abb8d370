from __future__ import annotations

import logging
import os
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.fernet import Fernet, InvalidToken

from common.config import ConfigurationError

from .models import SessionBlob


logger = logging.getLogger(__name__)

# Environment variable names for convenience configuration
ENV_BUCKET = "SESSION_BUCKET"
ENV_KEY_PREFIX = "SESSION_KEY_PREFIX"
ENV_FERNET_KEY = "SESSION_FERNET_KEY"

DEFAULT_KEY_PREFIX = "sessions/"
DEFAULT_TIMEOUT = 10.0

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


class StoreUnavailable(RuntimeError):
    """The session store could not be reached or returned an unusable record.

    Retryable: callers should surface it and try again later.
    """


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a urlsafe base64 encoded 32-byte key."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    return Fernet(key)


def _s3_client(region_name: Optional[str], timeout: float):
    cfg = Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"max_attempts": 2, "mode": "standard"},
    )
    return boto3.client("s3", region_name=region_name, config=cfg)


class S3SessionStore:
    """
    S3-backed store for session blobs, encrypted at rest using Fernet.

    One object per client identity at `{key_prefix}{identity}.session`.

    - `save(identity, blob)` overwrites any prior blob (last write wins).
    - `extract(identity)` returns the blob, or None when nothing is stored.
    - `delete(identity)` removes the record; deleting nothing is fine.

    Every backend failure is raised as `StoreUnavailable`. Nothing is cached,
    so `extract` always reflects what the last writer stored.

    Environment variables (optional, see `from_env`)
    - `SESSION_BUCKET`:      S3 bucket holding session objects
    - `SESSION_KEY_PREFIX`:  key prefix (default "sessions/")
    - `SESSION_FERNET_KEY`:  urlsafe base64-encoded key for Fernet
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        fernet_key: str | bytes,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        region_name: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._s3 = s3 or _s3_client(region_name, timeout)
        self._bucket = bucket
        self._prefix = key_prefix
        self._fernet = _to_fernet(fernet_key)

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls, *, region_name: Optional[str] = None) -> "S3SessionStore":
        bucket = os.environ.get(ENV_BUCKET)
        fkey = os.environ.get(ENV_FERNET_KEY)
        if not bucket or not fkey:
            missing = [name for name, val in [(ENV_BUCKET, bucket), (ENV_FERNET_KEY, fkey)] if not val]
            raise ConfigurationError(
                f"Missing required environment variables for session store: {', '.join(missing)}"
            )
        prefix = os.environ.get(ENV_KEY_PREFIX) or DEFAULT_KEY_PREFIX
        try:
            _to_fernet(fkey)
        except ValueError as ex:
            raise ConfigurationError(f"{ENV_FERNET_KEY} is not a valid Fernet key: {ex}") from ex
        return cls(bucket=bucket, fernet_key=fkey, key_prefix=prefix, region_name=region_name)

    def object_key(self, identity: str) -> str:
        if not identity:
            raise ValueError("identity is required")
        return f"{self._prefix}{identity}.session"

    # -------- Core operations --------
    def save(self, identity: str, blob: SessionBlob) -> None:
        key = self.object_key(identity)
        token = self._fernet.encrypt(bytes(blob))
        try:
            self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=token,
                ContentType="application/octet-stream",
            )
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailable(f"Failed to save session for {identity!r}: {e}") from e
        logger.info("Saved session for %s (%d bytes)", identity, len(blob))

    def extract(self, identity: str) -> Optional[SessionBlob]:
        """Read and decrypt the stored blob; None when no record exists."""
        key = self.object_key(identity)
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=key)
            body = resp["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in _MISSING_CODES:
                logger.info("No stored session for %s", identity)
                return None
            raise StoreUnavailable(f"Failed to read session for {identity!r}: {e}") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Failed to read session for {identity!r}: {e}") from e

        try:
            blob = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise StoreUnavailable(
                f"Stored session for {identity!r} cannot be decrypted with the configured key"
            ) from ex
        logger.info("Extracted session for %s (%d bytes)", identity, len(blob))
        return blob

    def delete(self, identity: str) -> None:
        key = self.object_key(identity)
        try:
            self._s3.delete_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in _MISSING_CODES:
                return
            raise StoreUnavailable(f"Failed to delete session for {identity!r}: {e}") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Failed to delete session for {identity!r}: {e}") from e
        logger.info("Deleted session for %s", identity)

    def check(self) -> None:
        """Verify the bucket is reachable; raises StoreUnavailable otherwise."""
        try:
            self._s3.head_bucket(Bucket=self._bucket)
        except (ClientError, BotoCoreError) as e:
            raise StoreUnavailable(f"Session bucket {self._bucket!r} is not reachable: {e}") from e


__all__ = ["S3SessionStore", "StoreUnavailable"]
