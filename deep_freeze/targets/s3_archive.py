import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, NoReturn, Optional, Sequence, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..utils.exceptions import AuthenticationError, RateLimitError, UploadError

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_CLASS = "DEEP_ARCHIVE"

NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")
AUTH_ERROR_CODES = (
    "InvalidAccessKeyId",
    "ExpiredToken",
    "SignatureDoesNotMatch",
    "InvalidToken",
)
THROTTLE_CODES = ("SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded")


@dataclass(frozen=True)
class UploadedPart:
    part_number: int
    etag: str
    size: int


class S3ArchiveClient:
    """Cold-archive destination backed by an S3 bucket."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        storage_class: str = DEFAULT_STORAGE_CLASS,
        profile: Optional[str] = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._storage_class = storage_class
        self._profile = profile
        self._client: Optional[Any] = None

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def storage_class(self) -> str:
        return self._storage_class

    def connect(self) -> None:
        try:
            session = boto3.session.Session(
                profile_name=self._profile or None, region_name=self._region
            )
            self._client = session.client("s3")
        except BotoCoreError as e:
            raise AuthenticationError(
                f"Failed to create S3 client: {e}", provider="aws"
            ) from e
        logger.info("Connected to S3 bucket %s (%s)", self._bucket, self._region)

    def _ensure_connected(self) -> Any:
        if self._client is None:
            raise UploadError(
                "Not connected to S3. Call connect() first.",
                bucket=self._bucket,
            )
        return self._client

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get("Error", {}).get("Code", ""))

    @classmethod
    def _handle_client_error(
        cls,
        error: ClientError,
        key: Optional[str] = None,
        bucket: Optional[str] = None,
    ) -> NoReturn:
        code = cls._error_code(error)

        if code in AUTH_ERROR_CODES:
            raise AuthenticationError(
                f"S3 authentication error ({code}): {error}",
                provider="aws",
            ) from error

        if code in THROTTLE_CODES:
            raise RateLimitError(f"S3 throttled the request ({code}): {error}") from error

        raise UploadError(
            f"S3 error ({code}): {error}",
            bucket=bucket,
            key=key,
        ) from error

    def get_object_size(self, key: str) -> Optional[int]:
        """Return the archived object's size, or ``None`` when it does not exist."""
        s3 = self._ensure_connected()
        try:
            response = s3.get_object_attributes(
                Bucket=self._bucket,
                Key=key,
                ObjectAttributes=["ObjectSize"],
            )
        except ClientError as e:
            if self._error_code(e) in NOT_FOUND_CODES:
                return None
            self._handle_client_error(e, key=key, bucket=self._bucket)
        except BotoCoreError as e:
            raise UploadError(
                f"S3 attribute lookup failed: {e}", bucket=self._bucket, key=key
            ) from e
        return int(response["ObjectSize"])

    def put_object(self, key: str, file_path: Path) -> None:
        s3 = self._ensure_connected()
        try:
            with file_path.open("rb") as body:
                s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    StorageClass=self._storage_class,
                )
        except ClientError as e:
            self._handle_client_error(e, key=key, bucket=self._bucket)
        except BotoCoreError as e:
            raise UploadError(
                f"S3 upload failed: {e}", bucket=self._bucket, key=key
            ) from e
        logger.debug("Uploaded %s to s3://%s", key, self._bucket)

    def create_multipart_upload(self, key: str) -> str:
        s3 = self._ensure_connected()
        try:
            response = s3.create_multipart_upload(
                Bucket=self._bucket,
                Key=key,
                StorageClass=self._storage_class,
            )
        except ClientError as e:
            self._handle_client_error(e, key=key, bucket=self._bucket)
        except BotoCoreError as e:
            raise UploadError(
                f"S3 multipart create failed: {e}", bucket=self._bucket, key=key
            ) from e
        upload_id: str = response["UploadId"]
        logger.debug("Opened multipart upload %s for %s", upload_id, key)
        return upload_id

    def find_multipart_upload(self, key: str) -> Optional[str]:
        """Return the most recent open multipart upload id for ``key``, if any."""
        s3 = self._ensure_connected()
        try:
            response = s3.list_multipart_uploads(Bucket=self._bucket, Prefix=key)
        except ClientError as e:
            self._handle_client_error(e, key=key, bucket=self._bucket)
        except BotoCoreError as e:
            raise UploadError(
                f"S3 multipart lookup failed: {e}", bucket=self._bucket, key=key
            ) from e

        uploads = [u for u in response.get("Uploads", []) if u.get("Key") == key]
        if not uploads:
            return None
        uploads.sort(key=lambda u: u.get("Initiated") or "")
        upload_id: str = uploads[-1]["UploadId"]
        return upload_id

    def list_parts(self, key: str, upload_id: str) -> Dict[int, UploadedPart]:
        s3 = self._ensure_connected()
        parts: Dict[int, UploadedPart] = {}
        kwargs: Dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": key,
            "UploadId": upload_id,
        }
        while True:
            try:
                response = s3.list_parts(**kwargs)
            except ClientError as e:
                self._handle_client_error(e, key=key, bucket=self._bucket)
            except BotoCoreError as e:
                raise UploadError(
                    f"S3 part listing failed: {e}", bucket=self._bucket, key=key
                ) from e
            for part in response.get("Parts", []):
                number = int(part["PartNumber"])
                parts[number] = UploadedPart(
                    part_number=number,
                    etag=part["ETag"],
                    size=int(part["Size"]),
                )
            if not response.get("IsTruncated"):
                return parts
            kwargs["PartNumberMarker"] = response["NextPartNumberMarker"]

    def upload_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        body: Union[bytes, BinaryIO],
    ) -> str:
        s3 = self._ensure_connected()
        try:
            response = s3.upload_part(
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
        except ClientError as e:
            self._handle_client_error(e, key=key, bucket=self._bucket)
        except BotoCoreError as e:
            raise UploadError(
                f"Part {part_number} upload failed: {e}", bucket=self._bucket, key=key
            ) from e
        etag: str = response["ETag"]
        return etag

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[UploadedPart]
    ) -> None:
        s3 = self._ensure_connected()
        ordered: List[Dict[str, Any]] = [
            {"ETag": p.etag, "PartNumber": p.part_number}
            for p in sorted(parts, key=lambda p: p.part_number)
        ]
        try:
            s3.complete_multipart_upload(
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": ordered},
            )
        except ClientError as e:
            self._handle_client_error(e, key=key, bucket=self._bucket)
        except BotoCoreError as e:
            raise UploadError(
                f"S3 multipart completion failed: {e}", bucket=self._bucket, key=key
            ) from e
        logger.debug("Completed multipart upload %s for %s", upload_id, key)

    def delete_object(self, key: str) -> None:
        s3 = self._ensure_connected()
        try:
            s3.delete_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            self._handle_client_error(e, key=key, bucket=self._bucket)
        except BotoCoreError as e:
            raise UploadError(
                f"S3 delete failed: {e}", bucket=self._bucket, key=key
            ) from e
        logger.info("Deleted s3://%s/%s", self._bucket, key)

    def get_url(self, key: str) -> str:
        return f"s3://{self._bucket}/{key}"
