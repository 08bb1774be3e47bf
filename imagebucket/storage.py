import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import DEFAULT_PRESIGN_EXPIRY_SECONDS, Settings


logger = logging.getLogger("imagebucket.storage")

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class ObjectStoreError(RuntimeError):
    """Raised when a call against the object store cannot complete."""

    def __init__(
        self, operation: str, message: str, file_name: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.file_name = file_name


@dataclass
class StoredObject:
    """One entry of a bucket listing. Any field may be missing upstream."""

    key: Optional[str] = None
    size: Optional[int] = None
    checksum: Optional[str] = None

    @property
    def is_folder_marker(self) -> bool:
        return not self.size


@dataclass
class Tag:
    key: str
    value: str


def build_s3_client(settings: Settings):
    client_kwargs: Dict[str, Any] = {
        "service_name": "s3",
        "region_name": settings.region,
        "aws_access_key_id": settings.access_key,
        "aws_secret_access_key": settings.secret_key,
        "config": BotoConfig(signature_version="s3v4"),
    }
    if settings.endpoint_url:
        # S3-compatible servers such as MinIO expect path-style addressing.
        client_kwargs["endpoint_url"] = settings.endpoint_url
        client_kwargs["config"] = BotoConfig(
            signature_version="s3v4", s3={"addressing_style": "path"}
        )
    return boto3.client(**client_kwargs)


class ObjectStore:
    """Thin wrapper around a boto3 S3 client bound to a single bucket.

    Every backend failure is re-raised as :class:`ObjectStoreError` so the
    HTTP layer can answer with a structured response instead of a traceback.
    """

    def __init__(
        self,
        client,
        bucket_name: str,
        *,
        presign_expiry_seconds: int = DEFAULT_PRESIGN_EXPIRY_SECONDS,
    ) -> None:
        self._client = client
        self.bucket_name = bucket_name
        self.presign_expiry_seconds = presign_expiry_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStore":
        return cls(
            build_s3_client(settings),
            settings.bucket_name,
            presign_expiry_seconds=settings.presign_expiry_seconds,
        )

    def _fail(
        self, operation: str, error: Exception, file_name: Optional[str] = None
    ) -> ObjectStoreError:
        logger.error(
            "object_store_call_failed operation=%s bucket=%s key=%s error=%s",
            operation,
            self.bucket_name,
            sanitize_log_value(file_name),
            sanitize_log_value(str(error)),
        )
        return ObjectStoreError(
            operation, f"{operation} failed: {error}", file_name=file_name
        )

    def list_objects(self) -> List[StoredObject]:
        try:
            response = self._client.list_objects_v2(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as error:
            raise self._fail("list_objects", error) from error

        objects = [
            StoredObject(
                key=item.get("Key"),
                size=item.get("Size"),
                checksum=item.get("ETag"),
            )
            for item in response.get("Contents") or []
        ]
        logger.debug(
            "objects_listed bucket=%s count=%d", self.bucket_name, len(objects)
        )
        return objects

    def get_tags(self, file_name: str) -> List[Tag]:
        try:
            response = self._client.get_object_tagging(
                Bucket=self.bucket_name, Key=file_name
            )
        except (ClientError, BotoCoreError) as error:
            raise self._fail("get_tags", error, file_name) from error

        return [
            Tag(key=str(item.get("Key", "")), value=str(item.get("Value", "")))
            for item in response.get("TagSet") or []
        ]

    def get_access_url(self, file_name: str) -> str:
        # Signed locally; no request reaches the bucket.
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": file_name},
                ExpiresIn=self.presign_expiry_seconds,
            )
        except (ClientError, BotoCoreError) as error:
            raise self._fail("get_access_url", error, file_name) from error

    def get_object(self, file_name: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket_name, Key=file_name)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as error:
            raise self._fail("get_object", error, file_name) from error

    def put_object(self, file_name: str, data: bytes) -> None:
        try:
            self._client.put_object(Bucket=self.bucket_name, Key=file_name, Body=data)
        except (ClientError, BotoCoreError) as error:
            raise self._fail("put_object", error, file_name) from error
        logger.info(
            "object_written bucket=%s key=%s size=%d",
            self.bucket_name,
            sanitize_log_value(file_name),
            len(data),
        )

    def put_tags(self, file_name: str, pairs: Iterable[Tuple[str, str]]) -> None:
        """Replace the whole tag set of *file_name* with *pairs*."""

        tag_set = [{"Key": key, "Value": value} for key, value in pairs]
        try:
            self._client.put_object_tagging(
                Bucket=self.bucket_name,
                Key=file_name,
                Tagging={"TagSet": tag_set},
            )
        except (ClientError, BotoCoreError) as error:
            raise self._fail("put_tags", error, file_name) from error

    def check_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as error:
            raise self._fail("head_bucket", error) from error
