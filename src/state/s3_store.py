from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from .backend import OptimisticLockError
from .models import ProgressRecord


logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "progress/"

_PRECONDITION_CODES = ("PreconditionFailed", "412", "ConditionalRequestConflict", "409")


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a URL-safe base64-encoded 32-byte key."""
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _error_code(e: ClientError) -> Optional[str]:
    return e.response.get("Error", {}).get("Code")


@dataclass
class S3Location:
    bucket: str
    prefix: str

    def key_for(self, identity: str) -> str:
        # Identities are opaque; hash them so any value yields a safe object key
        digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()
        return f"{self.prefix}{digest}.json.enc"


class S3RecordBackend:
    """
    S3-backed `RecordBackend`: one Fernet-encrypted JSON object per identity.

    - `load()` returns `(record, etag)`; a missing object yields `(None, None)`.
    - `save(..., if_match=None)` creates the object with `IfNoneMatch="*"` so two
      writers cannot both create it.
    - `save(..., if_match=etag)` uploads to a temporary key, then COPYs over the
      destination with an `IfMatch` precondition (compare-and-swap).
    - Precondition failures raise `OptimisticLockError`.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = DEFAULT_PREFIX,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._loc = S3Location(bucket=bucket, prefix=prefix)
        self._fernet = _to_fernet(fernet_key)

    def load(self, identity: str) -> Tuple[Optional[ProgressRecord], Optional[str]]:
        """Read and decrypt the record for `identity`.

        Raises:
        - ValueError if decryption fails or content is not a valid record.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        key = self._loc.key_for(identity)
        try:
            resp = self._s3.get_object(Bucket=self._loc.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                return (None, None)
            raise

        body = resp["Body"].read()
        etag = resp.get("ETag")
        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise ValueError("Failed to decrypt progress record: invalid Fernet token") from ex

        try:
            record = ProgressRecord.model_validate_json(decrypted)
        except ValidationError as ex:
            raise ValueError("Failed to parse decrypted progress record") from ex

        return (record, etag)

    def save(self, identity: str, record: ProgressRecord, *, if_match: Optional[str]) -> str:
        key = self._loc.key_for(identity)
        ciphertext = self._fernet.encrypt(record.model_dump_json().encode("utf-8"))

        if if_match is None:
            try:
                resp = self._s3.put_object(
                    Bucket=self._loc.bucket,
                    Key=key,
                    Body=ciphertext,
                    ContentType="application/octet-stream",
                    IfNoneMatch="*",
                )
            except ClientError as e:
                if _error_code(e) in _PRECONDITION_CODES:
                    raise OptimisticLockError(f"Record already exists at s3://{self._loc.bucket}/{key}") from e
                raise
            return str(resp.get("ETag"))

        temp_key = f"{key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._loc.bucket,
            Key=temp_key,
            Body=ciphertext,
            ContentType="application/octet-stream",
        )

        try:
            resp = self._s3.copy_object(
                Bucket=self._loc.bucket,
                Key=key,
                CopySource={"Bucket": self._loc.bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            if _error_code(e) in _PRECONDITION_CODES:
                raise OptimisticLockError(f"ETag mismatch for s3://{self._loc.bucket}/{key}") from e
            raise
        finally:
            try:
                self._s3.delete_object(Bucket=self._loc.bucket, Key=temp_key)
            except ClientError:
                logger.warning("Failed to delete temporary object %s", temp_key, exc_info=True)

        # CopyObject nests the new ETag under CopyObjectResult
        result = resp.get("CopyObjectResult") or {}
        return str(result.get("ETag") or resp.get("ETag"))


__all__ = ["S3RecordBackend", "S3Location"]
