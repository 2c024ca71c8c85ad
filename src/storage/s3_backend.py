"""S3 Object Store - boto3 adapter for S3 and MinIO

Self-Explanatory: Streams ciphertext into a bucket and opens it back for reading.
Why: Production backend behind the ObjectStore interface.
How: Managed transfer (TransferConfig) for puts, get_object streaming bodies for gets.

MinIO speaks the S3 API, so the same client works with endpoint_url set.
"""

import threading
from typing import BinaryIO, Optional

import boto3
import structlog
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from src.gateway.errors import BackendError, GatewayError, ObjectNotFound, StartupFatal
from src.storage.base import SizedReader, UploadInfo

logger = structlog.get_logger()

NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
NO_BUCKET_CODES = {"NoSuchBucket", "NotFound", "404"}
BUCKET_OWNED_CODES = {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}

# Some S3-compatible servers only say "not found" in the message text.
# String matching is fragile; it is only consulted when the code is unknown.
NOT_FOUND_MESSAGE = "The specified key does not exist."


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def is_not_found(error: ClientError) -> bool:
    details = error.response.get("Error", {})
    if str(details.get("Code", "")) in NOT_FOUND_CODES:
        return True
    return details.get("Message") == NOT_FOUND_MESSAGE


class S3ObjectStore:
    """ObjectStore backed by an S3-compatible service"""

    def __init__(self, client, region: Optional[str] = None, max_concurrency: int = 4):
        self.client = client
        self.region = region
        self.max_concurrency = max_concurrency

    @classmethod
    def from_settings(cls, settings) -> "S3ObjectStore":
        client = boto3.client(
            "s3",
            endpoint_url=settings.endpoint_url,
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key.get_secret_value(),
            region_name=settings.region,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
        logger.info("S3 client initialized", endpoint=settings.endpoint_url, region=settings.region)
        return cls(client, region=settings.region)

    def put(
        self,
        bucket: str,
        name: str,
        stream: BinaryIO,
        size: int,
        part_size: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadInfo:
        reader = SizedReader(stream, size, cancel_event)
        transfer_config = TransferConfig(
            multipart_threshold=part_size,
            multipart_chunksize=part_size,
            max_concurrency=self.max_concurrency,
        )
        try:
            self.client.upload_fileobj(reader, bucket, name, Config=transfer_config)
        except GatewayError:
            raise
        except (BotoCoreError, ClientError) as e:
            raise BackendError(f"put_object failed for {bucket}/{name}: {type(e).__name__}") from e

        return UploadInfo(bucket=bucket, name=name, size=reader.bytes_read)

    def get(self, bucket: str, name: str) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=bucket, Key=name)
        except ClientError as e:
            if is_not_found(e):
                raise ObjectNotFound(bucket, name) from None
            raise BackendError(f"get_object failed for {bucket}/{name}: {_error_code(e)}") from e
        except BotoCoreError as e:
            raise BackendError(f"get_object failed for {bucket}/{name}: {type(e).__name__}") from e
        return response["Body"]

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if _error_code(e) in NO_BUCKET_CODES:
                return False
            raise BackendError(f"head_bucket failed for {bucket}: {_error_code(e)}") from e
        except BotoCoreError as e:
            raise BackendError(f"head_bucket failed for {bucket}: {type(e).__name__}") from e

    def ensure_bucket(self, bucket: str) -> bool:
        kwargs = {"Bucket": bucket}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}

        try:
            self.client.create_bucket(**kwargs)
        except ClientError as e:
            # Already ours (second start) counts as success
            if _error_code(e) in BUCKET_OWNED_CODES:
                try:
                    owned = self.bucket_exists(bucket)
                except BackendError as check_error:
                    raise StartupFatal(f"cannot verify bucket {bucket}") from check_error
                if owned:
                    logger.info("Bucket already owned", bucket=bucket)
                    return False
            raise StartupFatal(f"cannot create bucket {bucket}: {_error_code(e)}") from e
        except BotoCoreError as e:
            raise StartupFatal(f"cannot reach object store: {type(e).__name__}") from e

        logger.info("Bucket created", bucket=bucket)
        return True
